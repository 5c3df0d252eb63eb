"""Pure domain code and ports. Nothing here performs I/O."""
