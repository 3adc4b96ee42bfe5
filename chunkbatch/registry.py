"""
JobRegistry - Hold named job definitions.

The registry provides:
- Registration of JobDefs (immutable: a name can be registered once)
- Loading JobDefs from YAML or JSON files in a definitions directory
- Content-addressable hashing of definitions
- Thread-safe lookup for concurrent job runs
"""

import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional

import yaml

from chunkbatch.errors import JobNotFoundError, JobRegistrationError
from chunkbatch.schemas import JobDef

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")

# Built-in job definitions shipped with the package
BUILTIN_DEFINITIONS_DIR = Path(__file__).parent / "jobs" / "definitions"


class JobRegistry:
    """
    Registry of JobDefs, keyed by job name.

    Example directory structure for load_directory():
        definitions/
            person_import.yaml
            maintenance/
                hello.yaml
            _deprecated/
                old_job.yaml        (ignored)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, JobDef] = {}
        self._sources: dict[str, Path] = {}

    def register(self, job_def: JobDef, source: Optional[Path] = None) -> JobDef:
        """
        Register a job definition.

        Raises:
            JobRegistrationError: If a job with the same name is already registered
        """
        with self._lock:
            if job_def.name in self._jobs:
                raise JobRegistrationError(
                    f"Job '{job_def.name}' is already registered"
                    + (f" (from {self._sources[job_def.name]})" if job_def.name in self._sources else "")
                )
            self._jobs[job_def.name] = job_def
            if source is not None:
                self._sources[job_def.name] = source
        logger.debug(f"Registered job {job_def.name}")
        return job_def

    def get(self, name: str) -> JobDef:
        """
        Get a JobDef by name.

        Raises:
            JobNotFoundError: If no job with that name is registered
        """
        with self._lock:
            job_def = self._jobs.get(name)
        if job_def is None:
            raise JobNotFoundError(f"Job definition not found: {name}")
        return job_def

    def source_of(self, name: str) -> Optional[Path]:
        """File a job was loaded from, if any."""
        with self._lock:
            return self._sources.get(name)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._jobs

    def list_jobs(self) -> list[str]:
        """Sorted list of registered job names."""
        with self._lock:
            return sorted(self._jobs)

    def load_file(self, path: Path | str) -> JobDef:
        """
        Load and register a single definition file.

        Raises:
            JobRegistrationError: If the file is invalid
        """
        path = Path(path)
        try:
            data = _load_file(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise JobRegistrationError(f"Failed to load {path}: {e}")
        if not isinstance(data, dict):
            raise JobRegistrationError(f"Job definition must be a mapping: {path}")
        try:
            job_def = JobDef.from_dict(data)
        except JobRegistrationError as e:
            raise JobRegistrationError(f"Invalid job definition in {path}: {e}")
        except (KeyError, TypeError, ValueError) as e:
            raise JobRegistrationError(f"Invalid job definition in {path}: {e}")
        return self.register(job_def, source=path)

    def load_directory(self, definitions_dir: Path | str) -> int:
        """
        Load every definition file under a directory (recursively).

        Files under a `_deprecated` directory are ignored.

        Returns:
            Number of jobs loaded
        """
        definitions_dir = Path(definitions_dir)
        if not definitions_dir.exists():
            logger.warning(f"Definitions directory does not exist: {definitions_dir}")
            return 0

        count = 0
        for path in sorted(definitions_dir.glob("**/*")):
            if path.suffix not in DEFINITION_SUFFIXES or not path.is_file():
                continue
            if "_deprecated" in path.parts:
                continue
            self.load_file(path)
            count += 1
        logger.info(f"Loaded {count} job definitions from {definitions_dir}")
        return count

    @classmethod
    def with_builtins(cls) -> "JobRegistry":
        """A registry preloaded with the built-in job definitions."""
        registry = cls()
        registry.load_directory(BUILTIN_DEFINITIONS_DIR)
        return registry

    @staticmethod
    def compute_hash(job_def: JobDef) -> str:
        """
        Compute SHA256 hash of a JobDef for content addressing.

        Uses canonical JSON serialization (sorted keys, no whitespace)
        to ensure consistent hashing.
        """
        canonical = json.dumps(job_def.to_dict(), sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()


def _load_file(path: Path) -> Any:
    with open(path) as f:
        if path.suffix == ".json":
            return json.load(f)
        return yaml.safe_load(f)
