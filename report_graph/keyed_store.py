"""
Keyed storage used for reports, graph nodes, graph edges and cluster aggregates.

Every namespace is a KeyedStore mapping integer ids to Python objects. The
in-memory implementation holds live references; the shelve implementation
pickles values, so callers must put() an object again after mutating it.
"""
import os
import shelve
import threading
from abc import ABC, abstractmethod


class KeyedStore(ABC):
    """Interface of an integer-keyed object store."""

    def __init__(self, name):
        self.name = name

    @abstractmethod
    def get(self, key, default=None):
        """Return the value stored under key, or default when absent."""

    @abstractmethod
    def put(self, key, value):
        """Store value under key, replacing any previous value."""

    @abstractmethod
    def remove(self, key):
        """Remove key. Returns True if something was removed."""

    @abstractmethod
    def remove_all(self):
        """Remove every entry."""

    @abstractmethod
    def keys(self):
        """Return the set of stored keys."""

    def get_all(self, keys):
        """Return {key: value} for the given keys; absent keys are skipped."""
        result = {}
        for key in keys:
            value = self.get(key)
            if value is not None:
                result[key] = value
        return result

    def values(self):
        return list(self.get_all(self.keys()).values())

    def close(self):
        pass

    def __contains__(self, key):
        return self.get(key) is not None

    def __len__(self):
        return len(self.keys())

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r}, size={len(self)})"


class InMemoryStore(KeyedStore):
    """Dictionary-backed store guarded by a lock."""

    def __init__(self, name="memory"):
        super().__init__(name)
        self._data = {}
        self._lock = threading.RLock()

    def get(self, key, default=None):
        with self._lock:
            return self._data.get(key, default)

    def get_all(self, keys):
        with self._lock:
            return {k: self._data[k] for k in keys if k in self._data}

    def put(self, key, value):
        with self._lock:
            self._data[key] = value

    def remove(self, key):
        with self._lock:
            return self._data.pop(key, None) is not None

    def remove_all(self):
        with self._lock:
            self._data.clear()

    def keys(self):
        with self._lock:
            return set(self._data)

    def __contains__(self, key):
        with self._lock:
            return key in self._data

    def __len__(self):
        with self._lock:
            return len(self._data)


class ShelveStore(KeyedStore):
    """
    Durable store on top of the standard library shelve module.

    Keys are kept as decimal strings on disk and converted back to int.
    """

    def __init__(self, name, path):
        super().__init__(name)
        self.path = path
        self._lock = threading.RLock()
        self._shelf = shelve.open(path)

    def get(self, key, default=None):
        with self._lock:
            return self._shelf.get(str(key), default)

    def put(self, key, value):
        with self._lock:
            self._shelf[str(key)] = value

    def remove(self, key):
        with self._lock:
            try:
                del self._shelf[str(key)]
            except KeyError:
                return False
            return True

    def remove_all(self):
        with self._lock:
            self._shelf.clear()

    def keys(self):
        with self._lock:
            return {int(k) for k in self._shelf.keys()}

    def close(self):
        with self._lock:
            self._shelf.close()

    def __contains__(self, key):
        with self._lock:
            return str(key) in self._shelf

    def __len__(self):
        with self._lock:
            return len(self._shelf)


class StoreManager:
    """
    Hands out named stores. With base_dir=None every store lives in memory;
    otherwise each name maps to a shelve file inside base_dir.
    """

    def __init__(self, base_dir=None):
        self.base_dir = base_dir
        self._stores = {}
        if base_dir is not None:
            os.makedirs(base_dir, exist_ok=True)

    def _path(self, name):
        return os.path.join(self.base_dir, f"{name}.db")

    def _exists_on_disk(self, name):
        if self.base_dir is None:
            return False
        # dbm backends append their own suffixes to the shelve path
        prefix = f"{name}.db"
        return any(entry == prefix or entry.startswith(prefix + ".")
                   for entry in os.listdir(self.base_dir))

    def store_exists(self, name):
        return name in self._stores or self._exists_on_disk(name)

    def get_store(self, name, create=True):
        """
        Return the store registered under name.

        Raises KeyError when the store does not exist and create is False.
        """
        if name in self._stores:
            return self._stores[name]
        if not create and not self._exists_on_disk(name):
            raise KeyError(f"Store '{name}' does not exist")

        if self.base_dir is None:
            store = InMemoryStore(name)
        else:
            store = ShelveStore(name, self._path(name))
        self._stores[name] = store
        return store

    def store_names(self):
        names = set(self._stores)
        if self.base_dir is not None:
            for entry in os.listdir(self.base_dir):
                if ".db" in entry:
                    names.add(entry.split(".db")[0])
        return sorted(names)

    def remove_all_stores(self):
        """Empty and forget every store (files included)."""
        for name in self.store_names():
            self.get_store(name).remove_all()
        self.close()
        if self.base_dir is not None:
            for entry in os.listdir(self.base_dir):
                if ".db" in entry:
                    os.remove(os.path.join(self.base_dir, entry))

    def close(self):
        for store in self._stores.values():
            store.close()
        self._stores.clear()
