"""Block device access, validation, retention and metadata capture."""
