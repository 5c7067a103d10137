#!/usr/bin/env python3

import json
import os
import sqlite3
import threading
import uuid
from typing import Any, Dict, List, Optional, Tuple

import structlog

from .models.context_models import ContextOptimizationConfig, ContextOptimizationStrategy
from .models.provider_types import ProviderType

log = structlog.get_logger(__name__)

DATA_DIR_ENV = "ONESHOT_HOME"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant for software developers. Answer precisely, "
    "use the provided context when it is relevant, and format code in fenced blocks."
)


def get_data_directory() -> str:
    """Directory holding settings.db and sessions.db: $ONESHOT_HOME or ~/.oneshot"""
    return os.environ.get(DATA_DIR_ENV) or os.path.join(os.path.expanduser("~"), ".oneshot")


class SettingsService:
    """
    Thread-safe settings service.
    Provides CRUD API for application configuration stored in SQLite database.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the settings service.

        Args:
            db_path: Database file; defaults to settings.db in the data directory
        """
        self._db_lock = threading.RLock()  # Reentrant lock for database operations
        self._db_path = db_path or os.path.join(get_data_directory(), 'settings.db')

        self._init_database()
        self._create_tables()
        self._populate_defaults()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _init_database(self):
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)

            # Test connection
            with self._db_lock:
                conn = sqlite3.connect(self._db_path, check_same_thread=False)
                conn.close()

            log.info("settings.initialized", db_path=self._db_path)

        except (OSError, sqlite3.Error) as e:
            raise RuntimeError(f"Failed to initialize settings database: {e}") from e

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-safe database connection"""
        return sqlite3.connect(self._db_path, check_same_thread=False)

    def _create_tables(self):
        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()

                cursor.execute('''
                    CREATE TABLE IF NOT EXISTS settings (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        type TEXT NOT NULL DEFAULT 'string',
                        category TEXT DEFAULT 'general',
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                ''')

                cursor.execute('''
                    CREATE TABLE IF NOT EXISTS llm_providers (
                        id TEXT PRIMARY KEY,
                        name TEXT UNIQUE NOT NULL,
                        provider_type TEXT NOT NULL DEFAULT 'openai',
                        url TEXT NOT NULL,
                        api_key TEXT,
                        default_model TEXT,
                        chat_timeout REAL,
                        request_timeout REAL,
                        is_active BOOLEAN DEFAULT 0,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                ''')

                cursor.execute('CREATE INDEX IF NOT EXISTS idx_settings_category ON settings(category)')
                cursor.execute('CREATE INDEX IF NOT EXISTS idx_llm_active ON llm_providers(is_active)')

                conn.commit()

            except sqlite3.Error as e:
                conn.rollback()
                raise RuntimeError(f"Failed to create database schema: {e}") from e
            finally:
                conn.close()

    def _populate_defaults(self):
        """Populate database with default settings"""
        defaults = {
            'system_prompt': (DEFAULT_SYSTEM_PROMPT, 'system'),
            'context_optimization': (ContextOptimizationStrategy.SMART.value, 'context'),
            'context_min_partial_tokens': (ContextOptimizationConfig.min_partial_tokens, 'context'),
            'chat_timeout': (60.0, 'network'),
            'request_timeout': (30.0, 'network'),
            'max_request_history': (1000, 'diagnostics'),
            'max_error_history': (500, 'diagnostics'),
            'default_temperature': (0.7, 'llm'),
            'active_llm_provider': ('', 'ui'),
        }

        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()

                for key, (value, category) in defaults.items():
                    # Only insert if key doesn't exist
                    cursor.execute('SELECT 1 FROM settings WHERE key = ?', (key,))
                    if not cursor.fetchone():
                        value_str, value_type = self._serialize_value(value)
                        cursor.execute('''
                            INSERT INTO settings (key, value, type, category)
                            VALUES (?, ?, ?, ?)
                        ''', (key, value_str, value_type, category))

                conn.commit()

            except sqlite3.Error as e:
                conn.rollback()
                raise RuntimeError(f"Failed to populate default settings: {e}") from e
            finally:
                conn.close()

    # CRUD Operations for Settings

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a setting value by key"""
        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                cursor.execute('SELECT value, type FROM settings WHERE key = ?', (key,))
                result = cursor.fetchone()

                if result:
                    value, value_type = result
                    return self._deserialize_value(value, value_type)
                return default

            except sqlite3.Error as e:
                raise RuntimeError(f"Failed to get setting '{key}': {e}") from e
            finally:
                conn.close()

    def set_setting(self, key: str, value: Any, category: str = 'general') -> bool:
        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                value_str, value_type = self._serialize_value(value)

                cursor.execute('''
                    INSERT OR REPLACE INTO settings (key, value, type, category, updated_at)
                    VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ''', (key, value_str, value_type, category))

                conn.commit()
                return True

            except sqlite3.Error as e:
                conn.rollback()
                raise RuntimeError(f"Failed to set setting '{key}': {e}") from e
            finally:
                conn.close()

    def delete_setting(self, key: str) -> bool:
        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                cursor.execute('DELETE FROM settings WHERE key = ?', (key,))
                deleted = cursor.rowcount > 0
                conn.commit()
                return deleted

            except sqlite3.Error as e:
                conn.rollback()
                raise RuntimeError(f"Failed to delete setting '{key}': {e}") from e
            finally:
                conn.close()

    def get_settings_by_category(self, category: str) -> Dict[str, Any]:
        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                cursor.execute('SELECT key, value, type FROM settings WHERE category = ?', (category,))
                return {
                    key: self._deserialize_value(value, value_type)
                    for key, value, value_type in cursor.fetchall()
                }

            except sqlite3.Error as e:
                raise RuntimeError(f"Failed to get settings for category '{category}': {e}") from e
            finally:
                conn.close()

    # Typed accessors

    def get_system_prompt(self) -> str:
        return self.get_setting('system_prompt', DEFAULT_SYSTEM_PROMPT) or ''

    def save_system_prompt(self, prompt: str) -> bool:
        return self.set_setting('system_prompt', prompt, 'system')

    def get_optimization_strategy(self) -> ContextOptimizationStrategy:
        value = self.get_setting('context_optimization', ContextOptimizationStrategy.SMART.value)
        try:
            return ContextOptimizationStrategy(value)
        except ValueError:
            log.warning("settings.invalid_strategy", value=value)
            return ContextOptimizationStrategy.SMART

    def load_optimizer_config(self) -> ContextOptimizationConfig:
        floor = self.get_setting('context_min_partial_tokens', ContextOptimizationConfig.min_partial_tokens)
        return ContextOptimizationConfig(min_partial_tokens=max(1, int(floor)))

    # LLM Provider Operations

    _PROVIDER_COLUMNS = ('id', 'name', 'provider_type', 'url', 'api_key', 'default_model',
                         'chat_timeout', 'request_timeout', 'is_active')

    def add_llm_provider(self, name: str, provider_type: str = ProviderType.OPENAI.value,
                         url: Optional[str] = None, api_key: str = '',
                         default_model: Optional[str] = None,
                         chat_timeout: Optional[float] = None,
                         request_timeout: Optional[float] = None,
                         provider_id: Optional[str] = None) -> str:
        """
        Add a new LLM provider row.

        Returns:
            The provider id

        Raises:
            ValueError: Unknown provider type or duplicate name
        """
        try:
            kind = ProviderType(provider_type)
        except ValueError:
            raise ValueError(f"Unsupported provider type: {provider_type}")

        provider_id = provider_id or str(uuid.uuid4())
        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                cursor.execute('''
                    INSERT INTO llm_providers
                    (id, name, provider_type, url, api_key, default_model, chat_timeout, request_timeout)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ''', (provider_id, name, kind.value, url or kind.default_url, api_key,
                      default_model or kind.default_models[0], chat_timeout, request_timeout))

                conn.commit()
                log.info("settings.provider_added", provider_id=provider_id, provider_type=kind.value)
                return provider_id

            except sqlite3.IntegrityError:
                conn.rollback()
                raise ValueError(f"Provider '{name}' already exists")
            except sqlite3.Error as e:
                conn.rollback()
                raise RuntimeError(f"Failed to add LLM provider: {e}") from e
            finally:
                conn.close()

    def get_llm_providers(self) -> List[Dict[str, Any]]:
        """Get all LLM providers, as config dicts the provider factory accepts"""
        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                cursor.execute(f'''
                    SELECT {", ".join(self._PROVIDER_COLUMNS)}
                    FROM llm_providers ORDER BY created_at, name
                ''')
                return [self._provider_row(row) for row in cursor.fetchall()]

            except sqlite3.Error as e:
                raise RuntimeError(f"Failed to get LLM providers: {e}") from e
            finally:
                conn.close()

    def update_llm_provider(self, provider_id: str, **kwargs) -> bool:
        valid_fields = {'name', 'provider_type', 'url', 'api_key', 'default_model',
                        'chat_timeout', 'request_timeout'}
        update_fields = {k: v for k, v in kwargs.items() if k in valid_fields}

        if not update_fields:
            return False
        if 'provider_type' in update_fields:
            ProviderType(update_fields['provider_type'])

        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()

                set_clause = ', '.join([f"{field} = ?" for field in update_fields.keys()])
                values = list(update_fields.values()) + [provider_id]

                cursor.execute(f'''
                    UPDATE llm_providers SET {set_clause}, updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                ''', values)

                updated = cursor.rowcount > 0
                conn.commit()
                return updated

            except sqlite3.IntegrityError:
                conn.rollback()
                raise ValueError(f"Provider '{update_fields.get('name')}' already exists")
            except sqlite3.Error as e:
                conn.rollback()
                raise RuntimeError(f"Failed to update LLM provider: {e}") from e
            finally:
                conn.close()

    def delete_llm_provider(self, provider_id: str) -> bool:
        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                cursor.execute('DELETE FROM llm_providers WHERE id = ?', (provider_id,))
                deleted = cursor.rowcount > 0
                cursor.execute('''
                    UPDATE settings SET value = '' WHERE key = 'active_llm_provider' AND value = ?
                ''', (provider_id,))
                conn.commit()
                return deleted

            except sqlite3.Error as e:
                conn.rollback()
                raise RuntimeError(f"Failed to delete LLM provider: {e}") from e
            finally:
                conn.close()

    def set_active_llm_provider(self, provider_id: str) -> bool:
        """Mark one provider active; every other row is deactivated"""
        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                cursor.execute('SELECT 1 FROM llm_providers WHERE id = ?', (provider_id,))
                if cursor.fetchone() is None:
                    return False

                cursor.execute('UPDATE llm_providers SET is_active = 0')
                cursor.execute('UPDATE llm_providers SET is_active = 1 WHERE id = ?', (provider_id,))

                # Update the setting in the same transaction
                value_str, value_type = self._serialize_value(provider_id)
                cursor.execute('''
                    INSERT OR REPLACE INTO settings (key, value, type, category, updated_at)
                    VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ''', ('active_llm_provider', value_str, value_type, 'ui'))

                conn.commit()
                return True

            except sqlite3.Error as e:
                conn.rollback()
                raise RuntimeError(f"Failed to set active LLM provider: {e}") from e
            finally:
                conn.close()

    def get_active_llm_provider(self) -> Optional[Dict[str, Any]]:
        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                cursor.execute(f'''
                    SELECT {", ".join(self._PROVIDER_COLUMNS)}
                    FROM llm_providers WHERE is_active = 1 LIMIT 1
                ''')
                row = cursor.fetchone()
                return self._provider_row(row) if row else None

            except sqlite3.Error as e:
                raise RuntimeError(f"Failed to get active LLM provider: {e}") from e
            finally:
                conn.close()

    def _provider_row(self, row: Tuple) -> Dict[str, Any]:
        provider = dict(zip(self._PROVIDER_COLUMNS, row))
        provider['is_active'] = bool(provider['is_active'])
        provider['api_key'] = provider['api_key'] or ''
        return provider

    # Utility methods

    def _serialize_value(self, value: Any) -> Tuple[str, str]:
        """Serialize a value for database storage"""
        if isinstance(value, bool):
            return str(int(value)), 'boolean'
        elif isinstance(value, int):
            return str(value), 'integer'
        elif isinstance(value, float):
            return str(value), 'float'
        elif isinstance(value, (dict, list)):
            return json.dumps(value), 'json'
        else:
            return str(value), 'string'

    def _deserialize_value(self, value: str, value_type: str) -> Any:
        """Deserialize a value from database storage"""
        try:
            if value_type == 'boolean':
                return bool(int(value))
            elif value_type == 'integer':
                return int(value)
            elif value_type == 'float':
                return float(value)
            elif value_type == 'json':
                return json.loads(value)
            else:
                return value
        except (ValueError, json.JSONDecodeError):
            return value  # Return as string if deserialization fails
