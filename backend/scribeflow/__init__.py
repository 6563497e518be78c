"""Long-audio transcription delivery: remote job uploads, local chunking and transcript merging."""

__version__ = "1.0.0"
