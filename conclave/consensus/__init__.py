"""Committee consensus for approval requests.

Provides quorum evaluation, the committee roster, per-request decision
sessions and the coordinator that serializes votes, expiry and
cancellation across sessions.
"""
