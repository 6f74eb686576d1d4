"""Remote execution over SSH."""
