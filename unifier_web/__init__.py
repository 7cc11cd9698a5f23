"""
Media Unifier web backend: uploads, merge jobs, live progress and downloads
on top of the ffmpeg driver in unifier.py.
"""

__version__ = "2.0.0"
