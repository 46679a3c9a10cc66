"""Session-store collaborator."""
