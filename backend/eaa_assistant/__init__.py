"""EAA compliance assistant backend."""
