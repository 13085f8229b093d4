import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str) -> int | None:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else None


# Paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("CALLCENTER_DATA_DIR", BASE_DIR / "data"))
RECORDINGS_DIR = DATA_DIR / "recordings"
TRANSCRIPTS_DIR = DATA_DIR / "transcripts"
DB_PATH = DATA_DIR / "callcenter.db"

# Server
HOST = "127.0.0.1"
PORT = int(os.getenv("CALLCENTER_PORT", "8787"))

# Audio capture
SAMPLE_RATE = 44100
CHANNELS = 1
CHUNK_INTERVAL_SECS = 1.0
TICK_INTERVAL_SECS = 0.1
AUDIO_BITRATE = "128k"

# Audio devices (None = autodetect)
MIC_DEVICE_INDEX = _env_int("CALLCENTER_MIC_DEVICE")
OUTPUT_DEVICE_INDEX = _env_int("CALLCENTER_OUTPUT_DEVICE")

# Speech to text
WHISPER_MODEL = os.getenv("CALLCENTER_WHISPER_MODEL", "base")
SPEECH_LANGUAGE = os.getenv("CALLCENTER_LANGUAGE", "en-US")
LIVE_WINDOW_SECS = 5.0
RESTART_AFTER_FAULT_SECS = 0.5
RESTART_AFTER_END_SECS = 0.1
SETTLE_DELAY_SECS = 1.5

# Peer calling
SIGNALING_URL = os.getenv("CALLCENTER_SIGNALING_URL", "wss://0.peerjs.com/peerjs")
SIGNALING_KEY = os.getenv("CALLCENTER_SIGNALING_KEY", "peerjs")
ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
    {"urls": "stun:stun2.l.google.com:19302"},
]
PEER_ID_PREFIX = "cc_"
CALL_CONNECT_TIMEOUT_SECS = 30.0
AUTO_ANSWER = _env_bool("CALLCENTER_AUTO_ANSWER", True)
CALL_PLATFORM_LABEL = "peer"

# External platforms opened for video/audio meetings
EXTERNAL_CALL_URLS = {
    "zoom": "zoommtg://zoom.us/start?confno=new",
    "teams": "msteams://teams.microsoft.com/l/meeting/new",
    "meet": "https://meet.google.com/new",
}

# Contact directory
CONTACTS_URL = os.getenv("CALLCENTER_CONTACTS_URL", "http://localhost:3001/api/contacts")
CONTACTS_TIMEOUT_SECS = 10

# Write finished recordings and transcripts to RECORDINGS_DIR / TRANSCRIPTS_DIR as well
EXPORT_FILES = _env_bool("CALLCENTER_EXPORT_FILES", False)
