"""Build backends: sandboxed compiler and native worker."""
