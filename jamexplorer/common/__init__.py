"""Config, core types and errors."""
