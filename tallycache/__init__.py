"""tallycache - resumable sync and local cache for Tally accounting data."""

__version__ = "0.3.0"
