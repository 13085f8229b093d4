from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from db.models import (
    SCHEMA_SQL,
    AudioRecording,
    CallHistoryEntry,
    Contact,
    RecordKind,
    Transcription,
    count_words,
    make_file_name,
    utcnow,
)

logger = logging.getLogger(__name__)


class StorageFault(RuntimeError):
    """Raised when a store operation fails; nothing from it is visible to readers."""


class NotFound(StorageFault):
    """Raised when the requested record does not exist."""


class DuplicateKey(StorageFault):
    """Raised when a write collides with a unique key (file names)."""


def _to_dt(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _to_db_time(moment: datetime) -> str:
    # Stored as UTC text so string comparison orders by instant
    return moment.astimezone(timezone.utc).isoformat()


def _row_to_audio(row: sqlite3.Row) -> AudioRecording:
    return AudioRecording(
        id=row["id"],
        contact_name=row["contact_name"],
        captured_at=_to_dt(row["captured_at"]),
        file_name=row["file_name"],
        audio_data=bytes(row["audio_data"]),
        mime_type=row["mime_type"],
        duration_secs=row["duration_secs"],
        size_bytes=row["size_bytes"],
        transcribed=bool(row["transcribed"]),
        live_transcript=row["live_transcript"],
        transcription_id=row["transcription_id"],
    )


def _row_to_transcription(row: sqlite3.Row) -> Transcription:
    return Transcription(
        id=row["id"],
        audio_id=row["audio_id"],
        contact_name=row["contact_name"],
        captured_at=_to_dt(row["captured_at"]),
        file_name=row["file_name"],
        text=row["text"],
        word_count=row["word_count"],
    )


def _row_to_contact(row: sqlite3.Row) -> Contact:
    return Contact(
        id=row["id"],
        external_id=row["external_id"],
        name=row["name"],
        phone=row["phone"],
        email=row["email"],
        company=row["company"],
        photo=row["photo"],
        synced_at=_to_dt(row["synced_at"]),
    )


def _row_to_history(row: sqlite3.Row) -> CallHistoryEntry:
    return CallHistoryEntry(
        id=row["id"],
        contact_name=row["contact_name"],
        kind=row["kind"],
        duration_secs=row["duration_secs"],
        platform=row["platform"],
        occurred_at=_to_dt(row["occurred_at"]),
    )


_ROW_CONVERTERS = {
    RecordKind.AUDIO: _row_to_audio,
    RecordKind.TRANSCRIPTION: _row_to_transcription,
    RecordKind.CONTACT: _row_to_contact,
    RecordKind.CALL_HISTORY: _row_to_history,
}


class RecordingStore:
    """Transactional sqlite store for recordings, transcriptions, contacts and call history.

    Every public method is a coroutine. The blocking sqlite work runs on a single
    dedicated worker thread, so all transactions share one connection and are
    applied one at a time. Each logical operation is one transaction: it commits
    as a unit or is rolled back and reported as a ``StorageFault``.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="recording-store")
        self._executor.submit(self._init_schema).result()

    # -- Connection handling --

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return conn

    def _init_schema(self):
        self._get_conn().executescript(SCHEMA_SQL)

    @contextmanager
    def _transaction(self):
        conn = self._get_conn()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()

    async def _run(self, fn, *args):
        if self._executor is None:
            raise StorageFault("Recording store is closed")
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, functools.partial(fn, *args))
        except StorageFault:
            raise
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise DuplicateKey(str(e)) from e
            raise StorageFault(str(e)) from e
        except sqlite3.Error as e:
            raise StorageFault(str(e)) from e

    async def close(self):
        if self._executor is None:
            return

        def _close():
            conn = getattr(self._local, "conn", None)
            if conn is not None:
                conn.close()
                self._local.conn = None

        await asyncio.get_running_loop().run_in_executor(self._executor, _close)
        self._executor.shutdown(wait=True)
        self._executor = None

    # -- Audio recordings --

    async def put(self, recording: AudioRecording) -> int:
        return await self._run(self._put, recording)

    def _put(self, recording: AudioRecording) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audio_recordings (contact_name, captured_at, file_name, audio_data,
                    mime_type, duration_secs, size_bytes, transcribed, live_transcript)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    recording.contact_name,
                    _to_db_time(recording.captured_at),
                    recording.file_name,
                    sqlite3.Binary(recording.audio_data),
                    recording.mime_type,
                    recording.duration_secs,
                    recording.size_bytes,
                    int(recording.transcribed),
                    recording.live_transcript,
                ),
            )
        logger.info("Stored recording %s (%d bytes)", recording.file_name, recording.size_bytes)
        return cursor.lastrowid

    async def attach_transcript(self, audio_id: int, text: str) -> bool:
        return await self._run(self._attach_transcript, audio_id, text)

    def _attach_transcript(self, audio_id: int, text: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE audio_recordings SET live_transcript = ? WHERE id = ?", (text, audio_id)
            )
            if cursor.rowcount == 0:
                raise NotFound(f"Audio recording {audio_id} not found")
        return True

    # -- Transcriptions --

    async def put_transcription(self, audio_id: int, contact_name: str, text: str) -> Transcription:
        return await self._run(self._put_transcription, audio_id, contact_name, text)

    def _put_transcription(self, audio_id: int, contact_name: str, text: str) -> Transcription:
        now = utcnow()
        transcription = Transcription(
            audio_id=audio_id,
            contact_name=contact_name,
            captured_at=now,
            file_name=make_file_name(contact_name, now, "transcript"),
            text=text,
            word_count=count_words(text),
        )
        with self._transaction() as conn:
            row = conn.execute("SELECT id FROM audio_recordings WHERE id = ?", (audio_id,)).fetchone()
            if row is None:
                raise NotFound(f"Audio recording {audio_id} not found")
            transcription.id = self._insert_transcription(conn, transcription)
            self._mark_transcribed(conn, audio_id, transcription.id)
        return transcription

    def _insert_transcription(self, conn: sqlite3.Connection, transcription: Transcription) -> int:
        cursor = conn.execute(
            """
            INSERT INTO transcriptions (audio_id, contact_name, captured_at, file_name, text, word_count)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                transcription.audio_id,
                transcription.contact_name,
                _to_db_time(transcription.captured_at),
                transcription.file_name,
                transcription.text,
                transcription.word_count,
            ),
        )
        return cursor.lastrowid

    def _mark_transcribed(self, conn: sqlite3.Connection, audio_id: int, transcription_id: int):
        conn.execute(
            "UPDATE audio_recordings SET transcribed = 1, transcription_id = ? WHERE id = ?",
            (transcription_id, audio_id),
        )

    def _delete_transcription(self, conn: sqlite3.Connection, transcription_id: int) -> bool:
        row = conn.execute(
            "SELECT audio_id FROM transcriptions WHERE id = ?", (transcription_id,)
        ).fetchone()
        if row is None:
            return False
        conn.execute("DELETE FROM transcriptions WHERE id = ?", (transcription_id,))
        # Re-point the back-reference at the newest remaining transcription, if any
        conn.execute(
            """
            UPDATE audio_recordings
            SET transcription_id = (SELECT MAX(id) FROM transcriptions WHERE audio_id = :audio),
                transcribed = EXISTS (SELECT 1 FROM transcriptions WHERE audio_id = :audio)
            WHERE id = :audio AND transcription_id = :tid
            """,
            {"audio": row["audio_id"], "tid": transcription_id},
        )
        return True

    # -- Generic access --

    async def get(self, kind: RecordKind, record_id: int):
        return await self._run(self._get, kind, record_id)

    def _get(self, kind: RecordKind, record_id: int):
        row = self._get_conn().execute(
            f"SELECT * FROM {kind.value} WHERE id = ?", (record_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"{kind.value} record {record_id} not found")
        return _ROW_CONVERTERS[kind](row)

    async def list(self, kind: RecordKind) -> list:
        return await self._run(self._fetchall, kind, "", ())

    async def list_by_contact(self, kind: RecordKind, contact_name: str) -> list:
        return await self._run(self._fetchall, kind, f"WHERE {kind.contact_column} = ?", (contact_name,))

    async def list_between(self, kind: RecordKind, start: datetime, end: datetime) -> list:
        column = kind.time_column
        return await self._run(
            self._fetchall,
            kind,
            f"WHERE {column} >= ? AND {column} < ?",
            (_to_db_time(start), _to_db_time(end)),
        )

    def _fetchall(self, kind: RecordKind, where: str, params: tuple) -> list:
        order = "name" if kind is RecordKind.CONTACT else f"{kind.time_column} DESC, id DESC"
        rows = self._get_conn().execute(
            f"SELECT * FROM {kind.value} {where} ORDER BY {order}", params
        ).fetchall()
        convert = _ROW_CONVERTERS[kind]
        return [convert(row) for row in rows]

    async def delete(self, kind: RecordKind, record_id: int) -> bool:
        return await self._run(self._delete, kind, record_id)

    def _delete(self, kind: RecordKind, record_id: int) -> bool:
        with self._transaction() as conn:
            if kind is RecordKind.TRANSCRIPTION:
                deleted = self._delete_transcription(conn, record_id)
            else:
                if kind is RecordKind.AUDIO:
                    conn.execute("DELETE FROM transcriptions WHERE audio_id = ?", (record_id,))
                deleted = conn.execute(
                    f"DELETE FROM {kind.value} WHERE id = ?", (record_id,)
                ).rowcount > 0
            if not deleted:
                raise NotFound(f"{kind.value} record {record_id} not found")
        return True

    # -- Contacts --

    async def replace_all_contacts(self, contacts: list[Contact]) -> int:
        return await self._run(self._replace_all_contacts, list(contacts))

    def _replace_all_contacts(self, contacts: list[Contact]) -> int:
        with self._transaction() as conn:
            conn.execute("DELETE FROM contacts")
            for contact in contacts:
                self._insert_contact(conn, contact)
        logger.info("Contact set replaced with %d contacts", len(contacts))
        return len(contacts)

    def _insert_contact(self, conn: sqlite3.Connection, contact: Contact) -> int:
        cursor = conn.execute(
            """
            INSERT INTO contacts (external_id, name, phone, email, company, photo, synced_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                contact.external_id,
                contact.name,
                contact.phone,
                contact.email,
                contact.company,
                contact.photo,
                _to_db_time(contact.synced_at),
            ),
        )
        return cursor.lastrowid

    # -- Call history --

    async def append_call_history(self, entry: CallHistoryEntry) -> int:
        return await self._run(self._append_call_history, entry)

    def _append_call_history(self, entry: CallHistoryEntry) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO call_history (contact_name, kind, duration_secs, platform, occurred_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.contact_name,
                    entry.kind,
                    entry.duration_secs,
                    entry.platform,
                    _to_db_time(entry.occurred_at),
                ),
            )
        return cursor.lastrowid
