"""probehost - run sandboxed probe plugins and collect their reports."""

__version__ = "0.1.0"
