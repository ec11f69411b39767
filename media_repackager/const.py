MEDIA_FILE = ".mp4"
DASH_MANIFEST = ".mpd"
HLS_MANIFEST = ".m3u8"
VTT_FILE = ".vtt"
SERVER_MANIFEST = ".ism"
CLIENT_MANIFEST = ".ismc"

# Track parameter naming an alternate caption source for a text track.
TRANSCRIPT_SOURCE = "transcriptsrc"

# Client manifest subtype of a text stream carrying captions.
CAPTION_SUBTYPE = "SUBT"

# Server manifest format of assets recorded by the live-ingest pipeline.
LIVE_ARCHIVE_FORMAT = "vod-fragblob"

DEFAULT_TIME_SCALE = 10_000_000

FRAGMENT_HEADER = "header"
INPUT_DIRECTORY = "input"
