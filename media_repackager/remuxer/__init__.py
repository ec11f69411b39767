"""
Media remuxer package.

Provides pure Python implementations for turning live-archive objects into
contiguous media files:

- media_source: MediaSource protocol over single objects and fragment sequences
- transmuxer: fragmented MP4 rewriting (live video fix-up, live audio
  alignment, smooth track demultiplexing)
"""
