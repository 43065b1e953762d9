"""
Storage Module
Persistence port used by the ledger, the snapshot store and the manual
position store. Each consumer reads and writes one JSON-compatible blob
under its own key.
"""

import copy
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Exception raised when durable state cannot be read or written"""


class StorageBackend(ABC):
    """
    Abstract key-value blob store
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Read a blob

        Args:
            key (str): Blob key

        Returns:
            Optional[Dict[str, Any]]: Stored blob or None if the key is unknown
        """
        pass

    @abstractmethod
    def set(self, key: str, blob: Dict[str, Any]):
        """
        Write a blob, replacing any previous value

        Args:
            key (str): Blob key
            blob (Dict[str, Any]): JSON-compatible data
        """
        pass

    @abstractmethod
    def delete(self, key: str):
        """Remove a blob if present"""
        pass


class MemoryStorage(StorageBackend):
    """In-process storage, used for tests and ephemeral runs"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        blob = self._data.get(key)
        # Callers must not be able to mutate stored state in place
        return copy.deepcopy(blob) if blob is not None else None

    def set(self, key: str, blob: Dict[str, Any]):
        try:
            # Same constraint as the file backend: blobs must serialize
            json.dumps(blob)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Blob for '{key}' is not JSON serializable: {str(e)}") from e
        self._data[key] = copy.deepcopy(blob)

    def delete(self, key: str):
        self._data.pop(key, None)


class JsonFileStorage(StorageBackend):
    """
    Storage backed by a single JSON document on disk.
    Writes go to a temporary file first and are swapped in atomically.
    """

    def __init__(self, file_path: str):
        """
        Initialize file storage

        Args:
            file_path (str): Path of the JSON document
        """
        self.file_path = file_path

    def _read_document(self) -> Dict[str, Any]:
        try:
            with open(self.file_path, 'r') as f:
                document = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Cannot read storage file {self.file_path}: {str(e)}") from e

        if not isinstance(document, dict):
            raise PersistenceError(f"Storage file {self.file_path} does not contain a JSON object")
        return document

    def _write_document(self, document: Dict[str, Any]):
        temp_file = self.file_path + '.tmp'
        try:
            directory = os.path.dirname(os.path.abspath(self.file_path))
            os.makedirs(directory, exist_ok=True)

            with open(temp_file, 'w') as f:
                json.dump(document, f, indent=2)

            # Atomic replace
            os.replace(temp_file, self.file_path)
        except (OSError, TypeError, ValueError) as e:
            if os.path.exists(temp_file):
                os.remove(temp_file)
            raise PersistenceError(f"Cannot write storage file {self.file_path}: {str(e)}") from e

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self._read_document().get(key)

    def set(self, key: str, blob: Dict[str, Any]):
        document = self._read_document()
        document[key] = blob
        self._write_document(document)
        logger.debug(f"Saved '{key}' to {self.file_path}")

    def delete(self, key: str):
        document = self._read_document()
        if key in document:
            del document[key]
            self._write_document(document)


def create_storage(config_manager) -> StorageBackend:
    """
    Build the storage backend selected in configuration

    Args:
        config_manager (ConfigManager): Configuration manager instance

    Returns:
        StorageBackend: Configured backend
    """
    backend = config_manager.get('storage.backend', 'file')
    if backend == 'memory':
        return MemoryStorage()
    return JsonFileStorage(config_manager.get('storage.path', './data/portfolio_state.json'))
