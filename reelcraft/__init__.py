"""
reelcraft: turns a handful of photos and clips into one vertical 1080x1920
reel, rendered by a polling worker that drives ffmpeg.
"""

__version__ = "0.1.0"
