"""mcpgate command-line interface."""
