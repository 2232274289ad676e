"""katana-ci: on-demand Katana sequencer instances for CI."""

__version__ = "0.1.0"
