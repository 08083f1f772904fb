"""AWS session handling."""
