"""
Logging Utilities for Ranking Training and Serving.

This module provides structured logging for:
- Training runs (ALS, LTR)
- Recommendation requests
- Metrics tracking to SQLite

Databases are explicit objects: construct one at process start and pass it
to the components that need it.

Example:
    >>> from learnrank.logging_utils import setup_training_logger, TrainingMetricsDB
    >>> logger = setup_training_logger('als', 'run_001')
    >>> db = TrainingMetricsDB('logs/training_metrics.db')
    >>> db.log_training_start('run_001', 'als', {'factors': 100})
"""

import logging
import sqlite3
import threading
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Any
from contextlib import contextmanager

import numpy as np

# ============================================================================
# Constants
# ============================================================================

DEFAULT_LOG_DIR = "logs"
TRAINING_DB_NAME = "training_metrics.db"
SERVICE_DB_NAME = "service_metrics.db"

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _formatter() -> logging.Formatter:
    return logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)


# ============================================================================
# Logger Setup
# ============================================================================

def setup_training_logger(
    model_type: str,
    run_id: str,
    log_dir: str = DEFAULT_LOG_DIR,
    console: bool = True
) -> logging.Logger:
    """
    Setup logger for a training run.

    Args:
        model_type: 'als', 'ltr' or 'bundle'
        run_id: Unique run identifier
        log_dir: Directory for log files
        console: Whether to also log to console

    Returns:
        Configured logger

    Example:
        >>> logger = setup_training_logger('als', 'als_20261019_103000')
        >>> logger.info("Training started | factors=100, reg=0.01")
    """
    training_dir = Path(log_dir) / 'training'
    training_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(f'learnrank.training.{model_type}.{run_id}')
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    fh = logging.FileHandler(training_dir / f'{model_type}.log', encoding='utf-8')
    fh.setLevel(logging.INFO)
    fh.setFormatter(_formatter())
    logger.addHandler(fh)

    if console:
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)
        ch.setFormatter(_formatter())
        logger.addHandler(ch)

    return logger


def setup_service_logger(
    name: str = 'recommender',
    log_dir: str = DEFAULT_LOG_DIR,
    console: bool = True
) -> logging.Logger:
    """
    Setup logger for the recommendation service.

    Writes INFO and above to ``<log_dir>/service/<name>.log`` and errors to
    ``<log_dir>/service/error.log``.
    """
    service_dir = Path(log_dir) / 'service'
    service_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(f'service.{name}')
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    fh = logging.FileHandler(service_dir / f'{name}.log', encoding='utf-8')
    fh.setLevel(logging.INFO)
    fh.setFormatter(_formatter())
    logger.addHandler(fh)

    eh = logging.FileHandler(service_dir / 'error.log', encoding='utf-8')
    eh.setLevel(logging.ERROR)
    eh.setFormatter(_formatter())
    logger.addHandler(eh)

    if console:
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)
        ch.setFormatter(_formatter())
        logger.addHandler(ch)

    return logger


# ============================================================================
# Format Helpers
# ============================================================================

def format_params(params: Dict[str, Any]) -> str:
    """Format parameters for logging."""
    items = []
    for k, v in params.items():
        if isinstance(v, float):
            items.append(f"{k}={v:.4g}")
        else:
            items.append(f"{k}={v}")
    return ", ".join(items)


def format_metrics(metrics: Dict[str, float]) -> str:
    """Format metrics for logging."""
    items = []
    for k, v in metrics.items():
        if v is not None:
            items.append(f"{k}={v:.4f}")
    return ", ".join(items)


# ============================================================================
# SQLite Base
# ============================================================================

class _SQLiteMetricsDB:
    """
    Shared connection handling for the metrics databases.

    File databases open one connection per call. An in-memory database
    (``':memory:'``) lives only as long as its connection, so it keeps a
    single connection shared across threads under a lock.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._memory_conn: Optional[sqlite3.Connection] = None
        if db_path == ':memory:':
            self._memory_conn = sqlite3.connect(db_path, check_same_thread=False)
            self._memory_conn.row_factory = sqlite3.Row
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._create_tables()

    @contextmanager
    def _get_connection(self):
        """Get database connection with context manager."""
        if self._memory_conn is not None:
            with self._lock:
                yield self._memory_conn
            return

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def close(self):
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None

    def _create_tables(self):
        raise NotImplementedError


# ============================================================================
# Training Metrics Database
# ============================================================================

class TrainingMetricsDB(_SQLiteMetricsDB):
    """
    SQLite database for training runs.

    Tables:
    - training_runs: One row per training run
    - iteration_metrics: Per-iteration loss

    Example:
        >>> db = TrainingMetricsDB('logs/training_metrics.db')
        >>> db.log_training_start('run_001', 'als', {'factors': 100})
        >>> db.log_iteration('run_001', 1, loss=0.5)
        >>> db.log_training_complete('run_001', {'ndcg@10': 0.71})
    """

    def __init__(self, db_path: str = f"{DEFAULT_LOG_DIR}/{TRAINING_DB_NAME}"):
        super().__init__(db_path)

    def _create_tables(self):
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS training_runs (
                    run_id TEXT PRIMARY KEY,
                    model_type TEXT,
                    started_at TIMESTAMP,
                    completed_at TIMESTAMP,
                    status TEXT,
                    hyperparameters TEXT,
                    metrics TEXT,
                    training_time_seconds REAL,
                    version TEXT,
                    error TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS iteration_metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    iteration INT,
                    timestamp TIMESTAMP,
                    loss REAL,
                    wall_time_seconds REAL,

                    FOREIGN KEY (run_id) REFERENCES training_runs(run_id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_iteration_run_id
                ON iteration_metrics(run_id)
            """)
            conn.commit()

    def log_training_start(
        self,
        run_id: str,
        model_type: str,
        params: Dict[str, Any],
        version: Optional[str] = None
    ):
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO training_runs
                (run_id, model_type, started_at, status, hyperparameters, version)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                run_id,
                model_type,
                datetime.now().isoformat(),
                'running',
                json.dumps(params, default=str),
                version
            ))
            conn.commit()

    def log_iteration(
        self,
        run_id: str,
        iteration: int,
        loss: Optional[float] = None,
        wall_time_seconds: Optional[float] = None
    ):
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO iteration_metrics
                (run_id, iteration, timestamp, loss, wall_time_seconds)
                VALUES (?, ?, ?, ?, ?)
            """, (
                run_id,
                iteration,
                datetime.now().isoformat(),
                loss,
                wall_time_seconds
            ))
            conn.commit()

    def log_training_complete(
        self,
        run_id: str,
        metrics: Dict[str, float],
        training_time_seconds: Optional[float] = None
    ):
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE training_runs
                SET completed_at = ?,
                    status = 'completed',
                    metrics = ?,
                    training_time_seconds = ?
                WHERE run_id = ?
            """, (
                datetime.now().isoformat(),
                json.dumps(metrics),
                training_time_seconds,
                run_id
            ))
            conn.commit()

    def log_training_failed(self, run_id: str, error_message: str):
        """Log training failure."""
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE training_runs
                SET completed_at = ?,
                    status = 'failed',
                    error = ?
                WHERE run_id = ?
            """, (
                datetime.now().isoformat(),
                error_message,
                run_id
            ))
            conn.commit()

    def get_run(self, run_id: str) -> Optional[Dict]:
        """Get training run by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM training_runs WHERE run_id = ?",
                (run_id,)
            ).fetchone()
            return dict(row) if row else None

    def get_iteration_metrics(self, run_id: str) -> List[Dict]:
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM iteration_metrics
                WHERE run_id = ?
                ORDER BY iteration
            """, (run_id,)).fetchall()
            return [dict(row) for row in rows]


# ============================================================================
# Service Metrics Database
# ============================================================================

class ServiceMetricsDB(_SQLiteMetricsDB):
    """
    SQLite database for recommendation request logs.

    Example:
        >>> db = ServiceMetricsDB('logs/service_metrics.db')
        >>> db.log_request(user_id='u1', k=10, latency_ms=42.0, num_recommendations=10)
        >>> db.get_health_summary(minutes=5)
    """

    def __init__(self, db_path: str = f"{DEFAULT_LOG_DIR}/{SERVICE_DB_NAME}"):
        super().__init__(db_path)

    def _create_tables(self):
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TIMESTAMP,
                    user_id TEXT,
                    k INTEGER,
                    num_candidates INTEGER,
                    num_recommendations INTEGER,
                    latency_ms REAL,
                    cold_start BOOLEAN,
                    cache_hit BOOLEAN,
                    experiment_id TEXT,
                    variant TEXT,
                    model_version TEXT,
                    error_class TEXT,
                    error TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_requests_timestamp
                ON requests(timestamp)
            """)
            conn.commit()

    def log_request(
        self,
        user_id: str,
        k: int,
        latency_ms: float,
        num_recommendations: int,
        num_candidates: int = 0,
        cold_start: bool = False,
        cache_hit: bool = False,
        experiment_id: Optional[str] = None,
        variant: Optional[str] = None,
        model_version: Optional[str] = None,
        error_class: Optional[str] = None,
        error: Optional[str] = None
    ):
        """Log one recommendation request (successful or failed)."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO requests
                (timestamp, user_id, k, num_candidates, num_recommendations,
                 latency_ms, cold_start, cache_hit, experiment_id, variant,
                 model_version, error_class, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                datetime.now().isoformat(),
                user_id,
                k,
                num_candidates,
                num_recommendations,
                latency_ms,
                cold_start,
                cache_hit,
                experiment_id,
                variant,
                model_version,
                error_class,
                error
            ))
            conn.commit()

    def get_health_summary(self, minutes: int = 5) -> Dict[str, Any]:
        """Request volume, latency percentiles, cold-start and error rates."""
        since = (datetime.now() - timedelta(minutes=minutes)).isoformat()
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT latency_ms, cold_start, cache_hit, error_class
                FROM requests
                WHERE timestamp >= ?
            """, (since,)).fetchall()

        if not rows:
            return {'total_requests': 0}

        latencies = np.array([row['latency_ms'] for row in rows], dtype=float)
        return {
            'total_requests': len(rows),
            'avg_latency_ms': float(latencies.mean()),
            'p50_latency_ms': float(np.percentile(latencies, 50)),
            'p95_latency_ms': float(np.percentile(latencies, 95)),
            'p99_latency_ms': float(np.percentile(latencies, 99)),
            'cold_start_rate': float(np.mean([bool(row['cold_start']) for row in rows])),
            'cache_hit_rate': float(np.mean([bool(row['cache_hit']) for row in rows])),
            'error_rate': float(np.mean([row['error_class'] is not None for row in rows])),
        }
