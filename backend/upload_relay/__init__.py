"""Upload relay backend: staged uploads to remote object storage."""
