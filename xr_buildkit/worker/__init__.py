"""Out-of-process build worker."""
