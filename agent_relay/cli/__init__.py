"""relay command-line client."""
