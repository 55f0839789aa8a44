"""
Policy Store — append-only, versioned persistence of decision matrices and
prompt templates.

Behavioral Contract:
- Append-only. No API exists to modify or delete an existing version.
- Versions are unique by numeric value: "1.0" and "1.0.0" are the same version.
- A version becomes visible only after its file is fully written (written to a
  temp file in the same directory, fsynced, then renamed into place).
- Writes to the same key are serialized; writes to different keys proceed
  independently. Reads never wait on writes.
- "Latest" is resolved from an in-memory version index built once at start-up,
  so the read path never enumerates the directory.

Layout (relative to the store root):
    decision-matrix/v{version}.json
    prompts/{prompt_id}-v{version}.txt
"""

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from matrix_kernel.errors import PolicyIntegrityError, VersionExistsError
from matrix_kernel.models.matrix import DecisionMatrix
from matrix_kernel.policy.versioning import next_minor_version, parse_version, sort_versions

logger = logging.getLogger(__name__)

MATRIX_DIR = "decision-matrix"
PROMPT_DIR = "prompts"
INITIAL_PROMPT_VERSION = "1.0"

_MATRIX_FILE = re.compile(r"^v(\d+\.\d+(?:\.\d+)?)\.json$")
_PROMPT_FILE = re.compile(r"^(?P<prompt_id>[A-Za-z0-9_-]+)-v(?P<version>\d+\.\d+(?:\.\d+)?)\.txt$")
_PROMPT_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class PolicyStore:
    """
    File-backed policy store.
    Prototype: local filesystem. The directory layout is the compatibility contract.
    """

    def __init__(self, root: str):
        self.root = Path(root)
        (self.root / MATRIX_DIR).mkdir(parents=True, exist_ok=True)
        (self.root / PROMPT_DIR).mkdir(parents=True, exist_ok=True)

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._index_lock = threading.Lock()

        self._matrix_versions: List[str] = []
        self._prompt_versions: Dict[str, List[str]] = {}
        self._load_index()

    # --- Index ---

    def _load_index(self) -> None:
        """Scan the store once and build the sorted version index."""
        matrix_versions = []
        for path in (self.root / MATRIX_DIR).iterdir():
            match = _MATRIX_FILE.match(path.name)
            if match:
                matrix_versions.append(match.group(1))
        self._matrix_versions = sort_versions(matrix_versions)

        prompts: Dict[str, List[str]] = {}
        for path in (self.root / PROMPT_DIR).iterdir():
            match = _PROMPT_FILE.match(path.name)
            if match:
                prompts.setdefault(match.group("prompt_id"), []).append(match.group("version"))
        self._prompt_versions = {pid: sort_versions(vs) for pid, vs in prompts.items()}

        logger.info(
            "Policy store loaded: %d matrix versions, %d prompt templates",
            len(self._matrix_versions),
            len(self._prompt_versions),
        )

    def _register(self, versions: List[str], version: str) -> List[str]:
        return sort_versions(versions + [version])

    @staticmethod
    def _equivalent(versions: List[str], version: str) -> Optional[str]:
        """The stored version numerically equal to ``version`` ("1.0" == "1.0.0"), if any."""
        key = parse_version(version)
        for existing in versions:
            if parse_version(existing) == key:
                return existing
        return None

    # --- Write path ---

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _write_atomic(self, relative_path: str, content: str) -> None:
        """Materialize content in a temp file, then promote it to its final name."""
        target = self.root / relative_path
        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=".tmp-", suffix=target.suffix)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def save_version(self, matrix: DecisionMatrix) -> DecisionMatrix:
        """
        Persist a new decision matrix version.
        Raises VersionExistsError if the version is already stored and
        PolicyIntegrityError if an active rule references undefined attributes.
        """
        problems = matrix.integrity_violations()
        if problems:
            raise PolicyIntegrityError(
                f"Decision matrix v{matrix.version} failed integrity check: "
                + "; ".join(problems),
                version=matrix.version,
            )

        relative_path = f"{MATRIX_DIR}/v{matrix.version}.json"
        # Keyed on the numeric version so "1.0" and "1.0.0" share a lock
        lock_key = MATRIX_DIR + "/" + ".".join(str(p) for p in parse_version(matrix.version))
        with self._lock_for(lock_key):
            existing = self._equivalent(self._matrix_versions, matrix.version)
            if existing is not None or (self.root / relative_path).exists():
                raise VersionExistsError(
                    f"Decision matrix v{matrix.version} already exists (stored as v{existing or matrix.version})",
                    version=matrix.version,
                )
            self._write_atomic(relative_path, json.dumps(matrix.to_wire(), indent=2))
            with self._index_lock:
                self._matrix_versions = self._register(self._matrix_versions, matrix.version)

        logger.info(
            "Saved decision matrix v%s (%d rules)",
            matrix.version,
            len(matrix.rules),
            extra={"policy_version": matrix.version},
        )
        return matrix

    # --- Read path ---

    def get_version(self, version: str) -> Optional[DecisionMatrix]:
        """Get a specific decision matrix version, or None if absent."""
        parse_version(version)
        path = self.root / MATRIX_DIR / f"v{version}.json"
        if not path.exists():
            return None
        return DecisionMatrix.model_validate_json(path.read_text(encoding="utf-8"))

    def get_latest(self) -> Optional[DecisionMatrix]:
        """The highest stored version, or None when the store is empty."""
        versions = self._matrix_versions
        if not versions:
            return None
        return self.get_version(versions[0])

    def list_versions(self) -> List[str]:
        """All stored versions, latest first."""
        return list(self._matrix_versions)

    # --- Prompt templates ---

    def save_prompt(self, prompt_id: str, content: str, version: Optional[str] = None) -> str:
        """
        Store a new version of a prompt template and return its version.
        Without an explicit version the next minor version is used
        (starting at 1.0).
        """
        if not _PROMPT_ID.match(prompt_id):
            raise ValueError(f"Invalid prompt id {prompt_id!r}")

        with self._lock_for(f"{PROMPT_DIR}/{prompt_id}"):
            existing = self._prompt_versions.get(prompt_id, [])
            if version is None:
                version = next_minor_version(existing[0]) if existing else INITIAL_PROMPT_VERSION
            else:
                parse_version(version)

            relative_path = f"{PROMPT_DIR}/{prompt_id}-v{version}.txt"
            if self._equivalent(existing, version) is not None or (self.root / relative_path).exists():
                raise VersionExistsError(
                    f"Prompt {prompt_id} v{version} already exists",
                    version=version,
                )
            self._write_atomic(relative_path, content)
            with self._index_lock:
                self._prompt_versions[prompt_id] = self._register(existing, version)

        logger.info("Saved prompt %s v%s", prompt_id, version, extra={"policy_version": version})
        return version

    def get_prompt(self, prompt_id: str, version: Optional[str] = None) -> Optional[str]:
        """A prompt template by version, or its latest version when none is given."""
        if version is None:
            versions = self._prompt_versions.get(prompt_id)
            if not versions:
                return None
            version = versions[0]
        else:
            parse_version(version)
        path = self.root / PROMPT_DIR / f"{prompt_id}-v{version}.txt"
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def list_prompt_versions(self, prompt_id: str) -> List[str]:
        return list(self._prompt_versions.get(prompt_id, []))
