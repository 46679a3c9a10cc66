"""Gateway RPC client."""
