from collections import defaultdict
from threading import Lock

DEVICES_REGISTERED = "devices_registered_total"
DEVICES_DEDUPLICATED = "devices_deduplicated_total"

_metrics_lock = Lock()
_counters: dict[str, dict[tuple[tuple[str, str], ...], int]] = defaultdict(dict)


def _normalize_labels(labels: dict[str, str] | None) -> tuple[tuple[str, str], ...]:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def increment_counter(name: str, value: int = 1, **labels: str) -> None:
    key = _normalize_labels(labels)
    with _metrics_lock:
        current = _counters[name].get(key, 0)
        _counters[name][key] = current + int(value)


def get_counter(name: str, **labels: str) -> int:
    key = _normalize_labels(labels)
    with _metrics_lock:
        return _counters.get(name, {}).get(key, 0)


def increment_devices_registered(value: int = 1) -> None:
    increment_counter(DEVICES_REGISTERED, value)


def increment_devices_deduplicated(value: int) -> None:
    if value > 0:
        increment_counter(DEVICES_DEDUPLICATED, value)

