# storyforge/id_registry.py

import re
import threading


KIND_PREFIXES: dict[str, str] = {
    "component": "COMP-",
    "state_model": "C-STATE-",
    "event": "E-",
    "data_flow": "DF-",
}


def normalize_name(name: str) -> str:
    """
    'Login  button' -> 'LOGIN_BUTTON', 'user-profile' -> 'USER_PROFILE'.
    """
    s = (name or "").strip().upper()
    s = re.sub(r"[\s\-]+", "_", s)
    s = re.sub(r"[^A-Z0-9_]", "", s)
    s = re.sub(r"_+", "_", s)
    return s.strip("_")


class IdRegistry:
    """
    Mints stable ids for named entities.

        registry.mint("Login Button", "component")   -> "COMP-LOGIN-BUTTON"
        registry.mint("Login Button", "component")   -> "COMP-LOGIN-BUTTON"   (same name, same id)
        registry.mint("login-button", "component")   -> "COMP-LOGIN-BUTTON_2" (collision)

    Ids are deterministic only relative to insertion order when two different
    source names normalize to the same key: whichever name is minted first gets
    the base id and later names get `_2`, `_3`, ... Re-running discovery with
    seeds in a different order can therefore swap suffixes between names.

    One registry is built per run and passed explicitly to every component
    that mints ids.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # "kind:NORMALIZED" -> {source name: id}, in insertion order
        self._keys: dict[str, dict[str, str]] = {}
        self._issued: set[str] = set()

    def _prefix(self, kind: str) -> str:
        prefix = KIND_PREFIXES.get(kind)
        if prefix is None:
            raise ValueError(f"IdRegistry: unknown entity kind '{kind}'")
        return prefix

    def _base_id(self, kind: str, normalized: str) -> str:
        prefix = self._prefix(kind)
        if not normalized:
            return prefix.rstrip("-")
        return prefix + normalized.replace("_", "-")

    def mint(self, name: str, kind: str) -> str:
        source = (name or "").strip()
        normalized = normalize_name(source)
        key = f"{kind}:{normalized}"
        base = self._base_id(kind, normalized)

        with self._lock:
            names = self._keys.setdefault(key, {})
            if source in names:
                return names[source]

            if not names and base not in self._issued:
                minted = base
            else:
                n = max(len(names) + 1, 2)
                minted = f"{base}_{n}"
                while minted in self._issued:
                    n += 1
                    minted = f"{base}_{n}"

            names[source] = minted
            self._issued.add(minted)
            return minted

    def lookup(self, name: str, kind: str) -> str | None:
        source = (name or "").strip()
        key = f"{kind}:{normalize_name(source)}"
        with self._lock:
            return self._keys.get(key, {}).get(source)

    def reserve(self, stable_id: str) -> None:
        """
        Marks an id as taken without a source name (ids already present in a
        context that was not minted by this registry).
        """
        if not stable_id:
            return
        with self._lock:
            self._issued.add(stable_id)

    def is_issued(self, stable_id: str) -> bool:
        with self._lock:
            return stable_id in self._issued

    def snapshot(self) -> dict[str, dict[str, str]]:
        with self._lock:
            return {k: dict(v) for k, v in self._keys.items()}
