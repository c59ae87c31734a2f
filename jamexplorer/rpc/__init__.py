"""Explorer JSON-RPC API."""
