import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS audio_recordings (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    contact_name      TEXT NOT NULL,
    captured_at       TEXT NOT NULL,
    file_name         TEXT NOT NULL UNIQUE,
    audio_data        BLOB NOT NULL,
    mime_type         TEXT NOT NULL,
    duration_secs     INTEGER NOT NULL DEFAULT 0,
    size_bytes        INTEGER NOT NULL DEFAULT 0,
    transcribed       INTEGER NOT NULL DEFAULT 0,
    live_transcript   TEXT,
    transcription_id  INTEGER
);
CREATE INDEX IF NOT EXISTS idx_audio_contact ON audio_recordings(contact_name);
CREATE INDEX IF NOT EXISTS idx_audio_captured ON audio_recordings(captured_at);

CREATE TABLE IF NOT EXISTS transcriptions (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    audio_id      INTEGER NOT NULL REFERENCES audio_recordings(id),
    contact_name  TEXT NOT NULL,
    captured_at   TEXT NOT NULL,
    file_name     TEXT NOT NULL UNIQUE,
    text          TEXT NOT NULL,
    word_count    INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_transcriptions_audio ON transcriptions(audio_id);
CREATE INDEX IF NOT EXISTS idx_transcriptions_contact ON transcriptions(contact_name);
CREATE INDEX IF NOT EXISTS idx_transcriptions_captured ON transcriptions(captured_at);

CREATE TABLE IF NOT EXISTS contacts (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id  TEXT NOT NULL DEFAULT '',
    name         TEXT NOT NULL,
    phone        TEXT NOT NULL DEFAULT '',
    email        TEXT NOT NULL DEFAULT '',
    company      TEXT NOT NULL DEFAULT '',
    photo        TEXT,
    synced_at    TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_contacts_name ON contacts(name);
CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(email);
CREATE INDEX IF NOT EXISTS idx_contacts_external ON contacts(external_id);
CREATE INDEX IF NOT EXISTS idx_contacts_synced ON contacts(synced_at);

CREATE TABLE IF NOT EXISTS call_history (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    contact_name  TEXT NOT NULL,
    kind          TEXT NOT NULL CHECK (kind IN ('audio', 'video')),
    duration_secs INTEGER NOT NULL DEFAULT 0,
    platform      TEXT NOT NULL DEFAULT '',
    occurred_at   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_history_contact ON call_history(contact_name);
CREATE INDEX IF NOT EXISTS idx_history_occurred ON call_history(occurred_at);
CREATE INDEX IF NOT EXISTS idx_history_kind ON call_history(kind);
"""


class RecordKind(str, Enum):
    AUDIO = "audio_recordings"
    TRANSCRIPTION = "transcriptions"
    CONTACT = "contacts"
    CALL_HISTORY = "call_history"

    @property
    def contact_column(self) -> str:
        return "name" if self is RecordKind.CONTACT else "contact_name"

    @property
    def time_column(self) -> str:
        return {
            RecordKind.AUDIO: "captured_at",
            RecordKind.TRANSCRIPTION: "captured_at",
            RecordKind.CONTACT: "synced_at",
            RecordKind.CALL_HISTORY: "occurred_at",
        }[self]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_file_name(contact_name: str, moment: datetime, kind: str, extension: str | None = None) -> str:
    """Build the deterministic file name for a recording or transcript.

    ``Acme Corp`` captured on 2024-03-05 at 14:07:09 local time becomes
    ``Acme_Corp_2024-03-05_14-07-09.webm``.
    """
    sanitized = re.sub(r"[^a-zA-Z0-9]", "_", contact_name)
    local = moment.astimezone()
    if extension is None:
        extension = "webm" if kind == "audio" else "txt"
    return f"{sanitized}_{local:%Y-%m-%d}_{local:%H-%M-%S}.{extension}"


def count_words(text: str) -> int:
    return len(text.split())


@dataclass(slots=True)
class AudioRecording:
    contact_name: str
    captured_at: datetime
    file_name: str
    audio_data: bytes
    mime_type: str
    duration_secs: int
    size_bytes: int
    transcribed: bool = False
    live_transcript: str | None = None
    transcription_id: int | None = None
    id: int | None = None

    def summary(self) -> dict:
        return {
            "id": self.id,
            "contact_name": self.contact_name,
            "captured_at": self.captured_at.isoformat(),
            "file_name": self.file_name,
            "mime_type": self.mime_type,
            "duration_secs": self.duration_secs,
            "size_bytes": self.size_bytes,
            "transcribed": self.transcribed,
            "live_transcript": self.live_transcript,
            "transcription_id": self.transcription_id,
        }


@dataclass(slots=True)
class Transcription:
    audio_id: int
    contact_name: str
    captured_at: datetime
    file_name: str
    text: str
    word_count: int = 0
    id: int | None = None


@dataclass(slots=True)
class Contact:
    name: str
    external_id: str = ""
    phone: str = ""
    email: str = ""
    company: str = ""
    photo: str | None = None
    synced_at: datetime = field(default_factory=utcnow)
    id: int | None = None


@dataclass(slots=True)
class CallHistoryEntry:
    contact_name: str
    kind: str
    duration_secs: int
    platform: str = ""
    occurred_at: datetime = field(default_factory=utcnow)
    id: int | None = None
