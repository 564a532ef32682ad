"""
model_store.py
~~~~~~~~~~~~~~

SQLite-based store for trained networks.

Each row holds the network in the plain text weight file format and
its class names in the training info format, so a stored network can
be exported to the files the command line tools read.
"""

import os
import json
import sqlite3
import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Generator
from contextlib import contextmanager

from caveboy.config import model_dir as default_model_dir
from caveboy.errors import CaveboyError
from caveboy.network import Network
from caveboy.patterns import TrainingInfo
from caveboy.persistence import (
    format_network,
    format_training_info,
    parse_network,
    parse_training_info
)

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class StoredNetwork:
    network: Network
    info: Optional[TrainingInfo]
    metadata: Dict[str, Any]


class ModelDatabase:
    """
    Manages the SQLite database of stored networks.

    The database stores:
    - Network metadata (sizes, training status, final error, epochs)
    - Weight file text and training info text
    """

    def __init__(self, db_path: str = 'models/networks.db'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    sizes TEXT NOT NULL,
                    weights TEXT NOT NULL,
                    training_info TEXT,
                    trained INTEGER NOT NULL DEFAULT 0,
                    error REAL,
                    epochs INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_trained
                ON networks(trained)
            ''')

    @staticmethod
    def _metadata(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'network_id': row['network_id'],
            'sizes': json.loads(row['sizes']),
            'trained': bool(row['trained']),
            'error': row['error'],
            'epochs': row['epochs'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def save_network_to_db(
        self,
        network: Network,
        network_id: str,
        info: Optional[TrainingInfo] = None,
        trained: bool = True,
        error: Optional[float] = None,
        epochs: Optional[int] = None
    ) -> bool:
        """
        Save (or replace) a network.

        Raises:
            ValueError: If error is negative
        """
        if error is not None and error < 0:
            raise ValueError(f"Error must be non-negative, got {error}")

        weights_text = format_network(network)
        info_text = format_training_info(info) if info is not None and info.names else None

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT OR REPLACE INTO networks
                (network_id, sizes, weights, training_info, trained,
                 error, epochs, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?,
                        COALESCE((SELECT created_at FROM networks WHERE network_id = ?),
                                 CURRENT_TIMESTAMP),
                        CURRENT_TIMESTAMP)
            ''', (
                network_id,
                json.dumps(network.sizes),
                weights_text,
                info_text,
                1 if trained else 0,
                error,
                epochs,
                network_id
            ))

        logger.info(
            f"Saved network '{network_id}' with sizes {network.sizes}, "
            f"trained={trained}, error={error}"
        )
        return True

    def load_network_from_db(self, network_id: str) -> Optional[StoredNetwork]:
        """
        Load a network and its class names.

        Returns:
            StoredNetwork or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT * FROM networks WHERE network_id = ?', (network_id,))
            row = cursor.fetchone()

            if row is None:
                logger.warning(f"Network '{network_id}' not found")
                return None

            network = parse_network(row['weights'])
            info = parse_training_info(row['training_info']) if row['training_info'] else None
            logger.info(f"Loaded network '{network_id}'")
            return StoredNetwork(network, info, self._metadata(row))

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, sizes, trained, error, epochs,
                       created_at, updated_at
                FROM networks
                ORDER BY created_at DESC
            ''')
            networks = [self._metadata(row) for row in cursor.fetchall()]
            logger.debug(f"Listed {len(networks)} networks")
            return networks

    def delete_network_from_db(self, network_id: str) -> bool:
        """
        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('DELETE FROM networks WHERE network_id = ?', (network_id,))

            deleted = cursor.rowcount > 0
            if deleted:
                logger.info(f"Deleted network '{network_id}'")
            else:
                logger.warning(f"Could not delete network '{network_id}': not found")
            return deleted

    def get_network_metadata_from_db(self, network_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, sizes, trained, error, epochs,
                       created_at, updated_at
                FROM networks
                WHERE network_id = ?
            ''', (network_id,))

            row = cursor.fetchone()
            if row is None:
                logger.warning(f"Metadata for network '{network_id}' not found")
                return None
            return self._metadata(row)


# Database instances by directory
_databases: Dict[str, ModelDatabase] = {}


def _get_db(model_dir: Optional[str] = None) -> ModelDatabase:
    """
    Get or create the database instance for a model directory.

    Args:
        model_dir: Directory for the database file, CAVEBOY_MODEL_DIR
            (or 'models') when omitted
    """
    model_dir = model_dir or default_model_dir()
    if model_dir not in _databases:
        _databases[model_dir] = ModelDatabase(db_path=os.path.join(model_dir, 'networks.db'))
    return _databases[model_dir]


def save_network(
    network: Network,
    network_id: str,
    info: Optional[TrainingInfo] = None,
    model_dir: Optional[str] = None,
    trained: bool = True,
    error: Optional[float] = None,
    epochs: Optional[int] = None
) -> bool:
    """
    Save a network to the store.

    Returns:
        bool: True if the save was successful, False otherwise

    Example:
        >>> net = Network(4, 8, 2)
        >>> save_network(net, "my_network", trained=False)
        True
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False

    try:
        db = _get_db(model_dir)
        return db.save_network_to_db(network, network_id, info, trained, error, epochs)
    except ValueError as e:
        logger.error(f"Validation error saving network '{network_id}': {e}")
        return False
    except sqlite3.Error as e:
        logger.error(f"Database error saving network '{network_id}': {e}")
        return False
    except OSError as e:
        logger.error(f"Couldn't create model directory for '{network_id}': {e}")
        return False


def load_network(network_id: str, model_dir: Optional[str] = None) -> Optional[StoredNetwork]:
    """
    Load a network from the store.

    Returns:
        StoredNetwork or None if not found or unreadable
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return None

    try:
        return _get_db(model_dir).load_network_from_db(network_id)
    except CaveboyError as e:
        logger.error(f"Stored network '{network_id}' is malformed: {e}")
        return None
    except sqlite3.Error as e:
        logger.error(f"Database error loading network '{network_id}': {e}")
        return None


def list_saved_networks(model_dir: Optional[str] = None) -> List[Dict[str, Any]]:
    try:
        return _get_db(model_dir).list_networks_from_db()
    except sqlite3.Error as e:
        logger.error(f"Database error listing networks: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing networks: {e}")
        return []


def delete_network(network_id: str, model_dir: Optional[str] = None) -> bool:
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting network '{network_id}': {e}")
        return False


def get_network_metadata(
    network_id: str,
    model_dir: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """
    Get metadata for a network without parsing its weights.

    Example:
        >>> metadata = get_network_metadata("my_network")
        >>> if metadata:
        ...     print(f"Error: {metadata['error']}")
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return None

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(f"Database error getting metadata for '{network_id}': {e}")
        return None
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error getting metadata for '{network_id}': {e}")
        return None
