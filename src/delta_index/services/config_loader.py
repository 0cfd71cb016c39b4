"""
Configuration Loader Service

Loads delta_index configuration from delta_index.json in the project root.
Environment variables always take precedence over config file values.

Config file location (in order of precedence):
1. DELTA_INDEX_PROJECT_ROOT/delta_index.json (if DELTA_INDEX_PROJECT_ROOT is set)
2. CWD/delta_index.json

Supported settings in delta_index.json:
{
    // Embedding cache
    "cache_max_entries": 10000,            // -> DELTA_INDEX_CACHE_MAX_ENTRIES
    "cache_max_bytes": 104857600,          // -> DELTA_INDEX_CACHE_MAX_BYTES
    "cache_ttl_seconds": 604800,           // -> DELTA_INDEX_CACHE_TTL_SECONDS
    "cache_cleanup_interval_seconds": 3600,
    "cache_persist_interval_seconds": 0,   // 0 disables autosave
    "cache_path": "",                      // default: <state dir>/embedding_cache.json

    // Embedding backend
    "embedding_provider": "local",         // "local", "ollama" or "lightweight"
    "embedding_model": "sentence-transformers/all-MiniLM-L6-v2",
    "ollama_url": "http://localhost:11434",
    "embedding_timeout": 30.0,

    // Vector backend
    "qdrant_url": "http://localhost:6333",
    "qdrant_api_key": "",
    "qdrant_collection": "code_chunks",
    "qdrant_timeout": 10.0,
    "vector_dimension": 384,

    // Retrieval
    "retrieval_max_tokens": 8000,
    "retrieval_candidate_multiplier": 3,
    "retrieval_semantic_weight": 0.7,
    "retrieval_keyword_weight": 0.3,
    "retrieval_enable_reranking": false,
    "retrieval_diversity_factor": 0.0,
    "retrieval_max_results_per_source": 0, // 0 means unlimited
    "retrieval_deduplication_threshold": 0.9,
    "retrieval_min_score_threshold": 0.0,   // minimum hybrid score kept
    "retrieval_rrf_k": 60,
    "retrieval_expected_weight_total": 1.0, // semantic + keyword weights must sum to this

    // Indexing
    "indexing_max_concurrent_files": 5,
    "indexing_batch_size": 10,
    "indexing_chunk_size": 50,

    // Retry
    "retry_max_attempts": 3,
    "retry_base_delay": 1.0,
    "retry_max_delay": 30.0
}
"""

import os
import json
from pathlib import Path
from typing import Dict, Any, Optional

from ..logging_config import configure_logger_for_debug_trace

logger = configure_logger_for_debug_trace(__name__)


CONFIG_FILENAME = "delta_index.json"
ENV_PREFIX = "DELTA_INDEX_"


class ConfigLoader:
    """
    Loads configuration from delta_index.json file.

    ::: This is-in-layer Service-Layer.
    ::: This is a loader.
    ::: This is stateless.

    Priority: Environment variables > delta_index.json > defaults
    """

    CACHE_DEFAULTS = {
        "cache_max_entries": 10000,
        "cache_max_bytes": 100 * 1024 * 1024,
        "cache_ttl_seconds": 7 * 24 * 60 * 60,
        "cache_cleanup_interval_seconds": 60 * 60,
        "cache_persist_interval_seconds": 0,
        "cache_path": "",
    }

    EMBEDDING_DEFAULTS = {
        "embedding_provider": "local",
        "embedding_model": "sentence-transformers/all-MiniLM-L6-v2",
        "ollama_url": "http://localhost:11434",
        "embedding_timeout": 30.0,
    }

    VECTOR_DEFAULTS = {
        "qdrant_url": "http://localhost:6333",
        "qdrant_api_key": "",
        "qdrant_collection": "code_chunks",
        "qdrant_timeout": 10.0,
        "vector_dimension": 384,
    }

    RETRIEVAL_DEFAULTS = {
        "retrieval_max_tokens": 8000,
        "retrieval_candidate_multiplier": 3,
        "retrieval_semantic_weight": 0.7,
        "retrieval_keyword_weight": 0.3,
        "retrieval_enable_reranking": False,
        "retrieval_diversity_factor": 0.0,
        "retrieval_max_results_per_source": 0,
        "retrieval_deduplication_threshold": 0.9,
        "retrieval_min_score_threshold": 0.0,
        "retrieval_rrf_k": 60,
        "retrieval_expected_weight_total": 1.0,
    }

    INDEXING_DEFAULTS = {
        "indexing_max_concurrent_files": 5,
        "indexing_batch_size": 10,
        "indexing_chunk_size": 50,
    }

    RETRY_DEFAULTS = {
        "retry_max_attempts": 3,
        "retry_base_delay": 1.0,
        "retry_max_delay": 30.0,
    }

    def __init__(self):
        self._config: Dict[str, Any] = {}
        self._config_path: Optional[Path] = None
        self._loaded = False

    @staticmethod
    def env_var_for(key: str) -> str:
        """Environment variable overriding a config key (qdrant_url -> DELTA_INDEX_QDRANT_URL)."""
        return ENV_PREFIX + key.upper()

    def load(self, project_root: Optional[Path] = None) -> bool:
        """
        Load configuration from delta_index.json.

        Args:
            project_root: Project root directory. If None, uses DELTA_INDEX_PROJECT_ROOT or CWD.

        Returns:
            True if config file was found and loaded, False otherwise.
        """
        if self._loaded:
            return self._config_path is not None

        if project_root is None:
            env_root = os.getenv("DELTA_INDEX_PROJECT_ROOT")
            project_root = Path(env_root) if env_root else Path.cwd()

        config_path = Path(project_root) / CONFIG_FILENAME
        if config_path.exists():
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("top-level value must be an object")
                self._config = data
                self._config_path = config_path
                logger.info(f"[Config] Loaded config from: {config_path}")
            except json.JSONDecodeError as e:
                logger.warning(f"[Config] Invalid JSON in {config_path}: {e}")
            except (OSError, ValueError) as e:
                logger.warning(f"[Config] Error loading {config_path}: {e}")

        self._loaded = True
        return self._config_path is not None

    def get(self, key: str, default: Any = None) -> Any:
        """Get a resolved config value (env var, then file, then default)."""
        env_value = os.getenv(self.env_var_for(key))
        if env_value is not None:
            return self._convert(env_value, default)
        return self._config.get(key, default)

    @staticmethod
    def _convert(env_value: str, default_value: Any) -> Any:
        """Convert an environment string to the type of the default."""
        if isinstance(default_value, bool):
            return env_value.lower() in ('true', '1', 'yes')
        if isinstance(default_value, int):
            try:
                return int(env_value)
            except ValueError:
                logger.warning(f"[Config] Ignoring non-integer value '{env_value}'")
                return default_value
        if isinstance(default_value, float):
            try:
                return float(env_value)
            except ValueError:
                logger.warning(f"[Config] Ignoring non-numeric value '{env_value}'")
                return default_value
        return env_value

    def _section(self, defaults: Dict[str, Any]) -> Dict[str, Any]:
        return {key: self.get(key, default) for key, default in defaults.items()}

    def get_cache_config(self) -> Dict[str, Any]:
        """Embedding cache settings with defaults applied."""
        return self._section(self.CACHE_DEFAULTS)

    def get_embedding_config(self) -> Dict[str, Any]:
        """Embedding backend settings with defaults applied."""
        return self._section(self.EMBEDDING_DEFAULTS)

    def get_vector_config(self) -> Dict[str, Any]:
        """Vector backend settings with defaults applied."""
        return self._section(self.VECTOR_DEFAULTS)

    def get_retrieval_config(self) -> Dict[str, Any]:
        """Retrieval ranking settings with defaults applied."""
        return self._section(self.RETRIEVAL_DEFAULTS)

    def get_indexing_config(self) -> Dict[str, Any]:
        """Batch indexing settings with defaults applied."""
        return self._section(self.INDEXING_DEFAULTS)

    def get_retry_config(self) -> Dict[str, Any]:
        """Retry policy settings with defaults applied."""
        return self._section(self.RETRY_DEFAULTS)

    @property
    def config_path(self) -> Optional[Path]:
        """Path to the loaded config file, or None if not loaded."""
        return self._config_path

    @property
    def config(self) -> Dict[str, Any]:
        """The loaded configuration dictionary."""
        return self._config.copy()


# Global singleton instance
_config_loader: Optional[ConfigLoader] = None


def get_config_loader() -> ConfigLoader:
    """Get the global config loader instance."""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
    return _config_loader


def load_config(project_root: Optional[Path] = None) -> bool:
    """
    Load configuration from delta_index.json.

    Args:
        project_root: Project root directory. If None, auto-detects.

    Returns:
        True if config was loaded, False otherwise.
    """
    return get_config_loader().load(project_root)


def reset_config_loader() -> None:
    """Drop the singleton so the next get_config_loader() starts fresh."""
    global _config_loader
    _config_loader = None
