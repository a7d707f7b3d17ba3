"""Application services built on the credentials layer."""
