"""Worker node discovery."""
