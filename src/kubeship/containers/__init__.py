"""Container image export, distribution and runtime commands."""
