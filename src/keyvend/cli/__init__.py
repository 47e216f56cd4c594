"""keyvend command-line interface."""
