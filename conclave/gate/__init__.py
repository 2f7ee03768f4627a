"""Phase gates for the specification-driven workflow."""
