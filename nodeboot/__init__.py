"""nodeboot: bring up a local DatenLord storage node from a source tree."""

__version__ = "0.1.0"
