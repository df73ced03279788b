"""
SQLite client for conversations, episodic memories, summaries, profile and ledger.
"""

import json
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import AcquiredItem, Conversation, EpisodicMemory, Message, RollingSummary, UserProfile
from .config import StorageConfig
from .logging_config import get_logger
from .profile_crypto import ProfileCipher, ProfileCryptoError
from .timestamp_utils import from_iso, to_iso

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    messages TEXT NOT NULL DEFAULT '[]',
    voice_settings TEXT NOT NULL DEFAULT '{}',
    summarized_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT NOT NULL,
    vector TEXT NOT NULL,
    category TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS memory_contexts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    summary TEXT NOT NULL,
    topics TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS user_profiles (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    core_profile TEXT,
    living_summary TEXT NOT NULL DEFAULT '',
    updated_at TEXT
);
CREATE TABLE IF NOT EXISTS acquired_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item TEXT NOT NULL,
    source TEXT NOT NULL,
    context TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


class SqliteError(Exception):
    """Custom exception for SQLite storage errors."""
    pass


class SqliteClient:
    """Thread-safe SQLite store. One connection, serialized by a lock."""

    def __init__(self, config: StorageConfig, cipher: Optional[ProfileCipher] = None):
        """
        Initialize SQLite client and create tables.

        Args:
            config: StorageConfig instance with database path and encryption key
            cipher: Profile cipher (optional, built from config.encryption_key if None)
        """
        self.config = config
        self._lock = threading.Lock()

        if cipher is None and config.encryption_key:
            cipher = ProfileCipher(config.encryption_key)
        self._cipher = cipher
        if self._cipher is None:
            logger.warning('No profile encryption key configured; profile storage is unavailable')

        try:
            self._conn = sqlite3.connect(config.database_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._lock, self._conn:
                self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            logger.error(f'Failed to open SQLite database {config.database_path}: {e}')
            raise SqliteError(f'Failed to open database: {e}')

        logger.info(f'Initialized SQLite client for database: {config.database_path}')

    def _execute(self, query: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            with self._lock, self._conn:
                return self._conn.execute(query, params)
        except sqlite3.Error as e:
            logger.error(f'SQLite query failed: {e}')
            raise SqliteError(f'SQLite query failed: {e}')

    def _fetchall(self, query: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        try:
            with self._lock:
                return self._conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            logger.error(f'SQLite query failed: {e}')
            raise SqliteError(f'SQLite query failed: {e}')

    def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        rows = self._fetchall(query, params)
        return rows[0] if rows else None

    # Conversations

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(id=row['id'],
                            title=row['title'],
                            messages=[Message.from_dict(m) for m in json.loads(row['messages'])],
                            voice_settings=json.loads(row['voice_settings']),
                            summarized_count=row['summarized_count'],
                            created_at=from_iso(row['created_at']),
                            updated_at=from_iso(row['updated_at']))

    def create_conversation(self, title: str, voice_settings: Dict[str, str]) -> Conversation:
        now = to_iso()
        cursor = self._execute(
            'INSERT INTO conversations (title, messages, voice_settings, summarized_count, created_at, updated_at) '
            'VALUES (?, ?, ?, 0, ?, ?)', (title, '[]', json.dumps(voice_settings), now, now))
        logger.debug(f'Created conversation {cursor.lastrowid}')
        return self.get_conversation(cursor.lastrowid)

    def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        row = self._fetchone('SELECT * FROM conversations WHERE id = ?', (conversation_id, ))
        return self._row_to_conversation(row) if row else None

    def list_conversations(self) -> List[Conversation]:
        rows = self._fetchall('SELECT * FROM conversations ORDER BY updated_at DESC, id DESC')
        return [self._row_to_conversation(row) for row in rows]

    def append_messages(self, conversation_id: int, messages: List[Message]) -> Conversation:
        """Append messages to a transcript in one transaction.

        Args:
            conversation_id: Target conversation
            messages: Messages in insertion order

        Returns:
            The updated conversation

        Raises:
            SqliteError: If the conversation does not exist or the write fails
        """
        try:
            with self._lock, self._conn:
                row = self._conn.execute('SELECT messages FROM conversations WHERE id = ?', (conversation_id, )).fetchone()
                if row is None:
                    raise SqliteError(f'Conversation {conversation_id} not found')
                stored = json.loads(row['messages'])
                stored.extend(m.to_dict() for m in messages)
                self._conn.execute('UPDATE conversations SET messages = ?, updated_at = ? WHERE id = ?',
                                   (json.dumps(stored, ensure_ascii=False), to_iso(), conversation_id))
        except sqlite3.Error as e:
            logger.error(f'Failed to append messages to conversation {conversation_id}: {e}')
            raise SqliteError(f'Failed to append messages: {e}')

        return self.get_conversation(conversation_id)

    def update_voice_settings(self, conversation_id: int, voice_settings: Dict[str, str]) -> Optional[Conversation]:
        self._execute('UPDATE conversations SET voice_settings = ?, updated_at = ? WHERE id = ?',
                      (json.dumps(voice_settings), to_iso(), conversation_id))
        return self.get_conversation(conversation_id)

    def set_summarized_count(self, conversation_id: int, count: int) -> None:
        self._execute('UPDATE conversations SET summarized_count = ? WHERE id = ?', (count, conversation_id))

    def delete_conversation(self, conversation_id: int) -> bool:
        return self._execute('DELETE FROM conversations WHERE id = ?', (conversation_id, )).rowcount > 0

    # Episodic memories and rolling summaries

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> EpisodicMemory:
        return EpisodicMemory(id=row['id'],
                              text=row['text'],
                              vector=json.loads(row['vector']),
                              category=row['category'],
                              created_at=from_iso(row['created_at']))

    def add_memory(self, text: str, vector: List[float], category: str) -> EpisodicMemory:
        cursor = self._execute('INSERT INTO memories (text, vector, category, created_at) VALUES (?, ?, ?, ?)',
                               (text, json.dumps(vector), category, to_iso()))
        row = self._fetchone('SELECT * FROM memories WHERE id = ?', (cursor.lastrowid, ))
        return self._row_to_memory(row)

    def recent_memories(self, limit: int) -> List[EpisodicMemory]:
        """Most recent memories, newest first."""
        rows = self._fetchall('SELECT * FROM memories ORDER BY id DESC LIMIT ?', (limit, ))
        return [self._row_to_memory(row) for row in rows]

    def add_summary(self, summary: str, topics: List[str]) -> RollingSummary:
        cursor = self._execute('INSERT INTO memory_contexts (summary, topics, created_at) VALUES (?, ?, ?)',
                               (summary, json.dumps(topics, ensure_ascii=False), to_iso()))
        row = self._fetchone('SELECT * FROM memory_contexts WHERE id = ?', (cursor.lastrowid, ))
        return RollingSummary(id=row['id'], summary=row['summary'], topics=json.loads(row['topics']), created_at=from_iso(row['created_at']))

    def recent_summaries(self, limit: int) -> List[RollingSummary]:
        rows = self._fetchall('SELECT * FROM memory_contexts ORDER BY id DESC LIMIT ?', (limit, ))
        return [
            RollingSummary(id=row['id'], summary=row['summary'], topics=json.loads(row['topics']), created_at=from_iso(row['created_at']))
            for row in rows
        ]

    # User profile

    def _require_cipher(self) -> ProfileCipher:
        if self._cipher is None:
            raise ProfileCryptoError('Profile encryption key is not configured')
        return self._cipher

    def get_user_profile(self) -> UserProfile:
        """Read and decrypt the singleton profile. Missing row yields an empty profile."""
        row = self._fetchone('SELECT * FROM user_profiles WHERE id = 1')
        if row is None:
            return UserProfile()
        core_profile = self._require_cipher().decrypt(row['core_profile'])
        return UserProfile(core_profile=core_profile,
                           living_summary=row['living_summary'] or '',
                           updated_at=from_iso(row['updated_at']) if row['updated_at'] else None)

    def save_user_profile(self, profile: UserProfile) -> UserProfile:
        """Encrypt and upsert the singleton profile."""
        encrypted = self._require_cipher().encrypt(profile.core_profile)
        now = to_iso()
        self._execute(
            'INSERT INTO user_profiles (id, core_profile, living_summary, updated_at) VALUES (1, ?, ?, ?) '
            'ON CONFLICT(id) DO UPDATE SET core_profile = excluded.core_profile, '
            'living_summary = excluded.living_summary, updated_at = excluded.updated_at', (encrypted, profile.living_summary, now))
        return UserProfile(core_profile=profile.core_profile, living_summary=profile.living_summary, updated_at=from_iso(now))

    # Acquired-items ledger

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> AcquiredItem:
        return AcquiredItem(id=row['id'],
                            item=row['item'],
                            source=row['source'],
                            context=row['context'],
                            created_at=from_iso(row['created_at']))

    def add_acquired_item(self, item: str, source: str, context: str) -> AcquiredItem:
        cursor = self._execute('INSERT INTO acquired_items (item, source, context, created_at) VALUES (?, ?, ?, ?)',
                               (item, source, context, to_iso()))
        row = self._fetchone('SELECT * FROM acquired_items WHERE id = ?', (cursor.lastrowid, ))
        return self._row_to_item(row)

    def list_acquired_items(self) -> List[AcquiredItem]:
        rows = self._fetchall('SELECT * FROM acquired_items ORDER BY id ASC')
        return [self._row_to_item(row) for row in rows]

    def delete_acquired_item(self, item_id: int) -> bool:
        return self._execute('DELETE FROM acquired_items WHERE id = ?', (item_id, )).rowcount > 0

    def health_check(self) -> bool:
        """
        Perform a health check on the database.

        Returns:
            True if the database answers a trivial query, False otherwise
        """
        try:
            self._fetchone('SELECT 1')
            return True
        except SqliteError as e:
            logger.error(f'SQLite health check failed: {e}')
            return False

    def close(self) -> None:
        with self._lock:
            self._conn.close()
