"""Built-in collaborator adapters for the admission gate."""
