"""Remote file-hosting (Google Drive) access and asset identifier resolution."""
