"""Report decoding and document building."""
