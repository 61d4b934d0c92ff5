"""jobrunner - supervise a fixed set of JVM-style job processes."""

__version__ = "0.1.0"
