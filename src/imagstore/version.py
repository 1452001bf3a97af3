"""Version of the running store; written into every new entry as imag.version."""

__version__ = "0.1.0"
