"""neon-soul command-line interface."""
