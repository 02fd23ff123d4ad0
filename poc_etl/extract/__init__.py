"""Object store access, file discovery and the fetch/transform pipeline."""
