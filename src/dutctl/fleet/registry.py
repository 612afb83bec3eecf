"""Persistent registry of known DUTs.

Maps each DUT's stable identity to its last known connection descriptor.
The store is a YAML file rewritten atomically on every mutation, so a
crash leaves either the old or the new state on disk, never a mix.
Mutations are serialized through a lock; reads take no lock.
"""

import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

import yaml

from dutctl.fleet.descriptor import DEFAULT_IDENTITY_FILE, ConnectionDescriptor, parse_target
from dutctl.fleet.errors import RegistryError
from dutctl.telemetry.logger import get_logger

if TYPE_CHECKING:
    from dutctl.fleet.resolver import IdentityResolver

logger = get_logger(__name__)

REGISTRY_VERSION = "1.0"


class Registry:
    """Durable identity -> ConnectionDescriptor cache.

    Example:
        registry = Registry.open(Path("~/.dutctl/duts.yaml").expanduser())
        registry.set("kohaku_ABC123", ConnectionDescriptor("192.168.0.42"))
        for identity, descriptor in registry.list():
            print(identity, descriptor.address)
    """

    def __init__(self, path: Path) -> None:
        """Initialize registry handle.

        Args:
            path: Path of the backing YAML file
        """
        self._path = path
        self._write_lock = threading.Lock()

    @classmethod
    def open(cls, path: Path) -> "Registry":
        """Open the registry at path, creating an empty store if missing.

        Raises:
            RegistryError: If the store cannot be created
        """
        registry = cls(path)
        if not path.exists():
            try:
                registry._write({})
            except OSError as e:
                raise RegistryError(f"Cannot create registry at {path}: {e}") from e
            logger.info("Registry created", path=str(path))
        return registry

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, ConnectionDescriptor]:
        if not self._path.exists():
            raise RegistryError(f"Registry is not initialized: {self._path}")
        try:
            with open(self._path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise RegistryError(f"Cannot read registry {self._path}: {e}") from e

        duts = data.get("duts") if isinstance(data, dict) else None
        if duts is None:
            duts = {}
        if not isinstance(duts, dict):
            raise RegistryError(f"Malformed registry {self._path}: 'duts' is not a mapping")

        entries: dict[str, ConnectionDescriptor] = {}
        for identity, descriptor_data in duts.items():
            try:
                entries[str(identity)] = ConnectionDescriptor.from_dict(descriptor_data)
            except (KeyError, TypeError, ValueError) as e:
                raise RegistryError(
                    f"Malformed registry entry '{identity}' in {self._path}: {e}"
                ) from e
        return entries

    def _write(self, entries: dict[str, ConnectionDescriptor]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "version": REGISTRY_VERSION,
            "updated_at": datetime.now().isoformat(),
            "duts": {identity: d.to_dict() for identity, d in entries.items()},
        }

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _mutate(self, action: str, change) -> None:
        with self._write_lock:
            entries = self._read()
            change(entries)
            try:
                self._write(entries)
            except OSError as e:
                raise RegistryError(f"Cannot {action} registry {self._path}: {e}") from e

    def entries(self) -> dict[str, ConnectionDescriptor]:
        """Point-in-time snapshot of all entries, in insertion order.

        Raises:
            RegistryError: If the store is uninitialized or unreadable
        """
        return self._read()

    def get(self, identity: str) -> Optional[ConnectionDescriptor]:
        """Look up one identity; None if not registered."""
        return self._read().get(identity)

    def set(self, identity: str, descriptor: ConnectionDescriptor) -> None:
        """Store identity -> descriptor, overwriting any previous entry."""
        self._mutate("update", lambda entries: entries.__setitem__(identity, descriptor))
        logger.info("DUT registered", identity=identity, target=descriptor.address)

    def remove(self, identity: str) -> bool:
        """Remove an identity.

        Returns:
            True if it was registered, False if it was absent (no-op)
        """
        removed = []

        def drop(entries: dict[str, ConnectionDescriptor]) -> None:
            if entries.pop(identity, None) is not None:
                removed.append(identity)

        self._mutate("update", drop)
        if removed:
            logger.info("DUT removed", identity=identity)
        return bool(removed)

    def clear(self) -> None:
        """Remove every entry. The store stays initialized."""
        self._mutate("clear", lambda entries: entries.clear())
        logger.info("Registry cleared", path=str(self._path))

    def add(
        self,
        raw_target: str,
        resolver: "IdentityResolver",
        identity_file: str = DEFAULT_IDENTITY_FILE,
    ) -> tuple[str, ConnectionDescriptor]:
        """Resolve a target's identity and register it.

        Args:
            raw_target: ``host[:port]`` or a registered identity
            resolver: Resolver used to read the DUT's ``dut_id``
            identity_file: Key for descriptors built from addresses

        Returns:
            The identity and the stored descriptor
        """
        descriptor = parse_target(raw_target, self, identity_file)
        identity = resolver.resolve_identity(descriptor)
        self.set(identity, descriptor)
        return identity, descriptor

    def ids(self) -> List[str]:
        """Registered identities in insertion order."""
        return list(self._read().keys())

    def __len__(self) -> int:
        return len(self._read())

    def list(self) -> List[tuple[str, ConnectionDescriptor]]:
        """Registered (identity, descriptor) pairs in insertion order."""
        return [(identity, d) for identity, d in self._read().items()]
