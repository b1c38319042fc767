"""Library allow-list for sandboxed code.

Libraries are never bound as raw modules: each is a namespace holding a
fixed set of callables, so module internals (``os``, ``sys`` reachable via
attributes) never leak into user code. Loaders run inside the sandbox
process only.
"""

from __future__ import annotations

import types
from typing import Any, Callable, Dict, Iterable, List


def _expose(module: Any, names: Iterable[str], **extra: Any) -> types.SimpleNamespace:
    members = {name: getattr(module, name) for name in names}
    members.update(extra)
    return types.SimpleNamespace(**members)


def _json():
    import json
    return _expose(json, ["loads", "dumps"])


def _math():
    import math
    return _expose(math, [
        "ceil", "floor", "sqrt", "pow", "exp", "log", "log10", "log2", "fabs",
        "isclose", "isfinite", "isnan", "pi", "e", "inf", "trunc", "gcd",
    ])


def _re():
    import re
    return _expose(re, ["match", "search", "fullmatch", "findall", "sub", "split", "escape",
                        "IGNORECASE", "MULTILINE", "DOTALL"])


def _datetime():
    import datetime
    return _expose(datetime, ["datetime", "date", "time", "timedelta", "timezone"])


def _itertools():
    import itertools
    return _expose(itertools, [
        "chain", "islice", "groupby", "product", "permutations", "combinations",
        "accumulate", "zip_longest", "starmap", "count", "repeat",
    ])


def _functools():
    import functools
    return _expose(functools, ["reduce"])


def _collections():
    import collections
    return _expose(collections, ["Counter", "OrderedDict", "defaultdict", "deque", "namedtuple"])


def _statistics():
    import statistics
    return _expose(statistics, ["mean", "median", "mode", "stdev", "pstdev", "variance", "fmean"])


def _dateutil():
    from dateutil import parser, relativedelta, tz
    return types.SimpleNamespace(
        parse=parser.parse,
        isoparse=parser.isoparse,
        relativedelta=relativedelta.relativedelta,
        gettz=tz.gettz,
        UTC=tz.UTC,
    )


def _hashlib():
    import hashlib
    import hmac
    return _expose(hashlib, ["md5", "sha1", "sha256", "sha512", "blake2b"], hmac=hmac.new)


def _base64():
    import base64
    return _expose(base64, ["b64encode", "b64decode", "urlsafe_b64encode", "urlsafe_b64decode"])


# Always bound
BASE_LIBRARIES: Dict[str, Callable[[], Any]] = {
    "json": _json,
    "math": _math,
    "re": _re,
    "datetime": _datetime,
}

# Bound only when enabled on the node
OPTIONAL_LIBRARIES: Dict[str, Callable[[], Any]] = {
    "itertools": _itertools,
    "functools": _functools,
    "collections": _collections,
    "statistics": _statistics,
    "dateutil": _dateutil,
    "hashlib": _hashlib,
    "base64": _base64,
}

AVAILABLE_LIBRARIES = sorted(OPTIONAL_LIBRARIES)


def normalize_library_selection(selection: Any) -> List[str]:
    """Accept ``["hashlib"]`` or ``{"hashlib": true, "dateutil": false}``."""
    if not selection:
        return []
    if isinstance(selection, dict):
        return sorted(name for name, enabled in selection.items() if enabled)
    return sorted(set(selection))


def unknown_libraries(names: Iterable[str]) -> List[str]:
    return sorted(set(names) - set(OPTIONAL_LIBRARIES))


def load_libraries(names: Iterable[str]) -> Dict[str, Any]:
    """Build the library bindings for one sandbox invocation."""
    bindings = {name: loader() for name, loader in BASE_LIBRARIES.items()}
    for name in names:
        loader = OPTIONAL_LIBRARIES.get(name)
        if loader is None:
            raise ValueError(f"Library '{name}' is not available in the sandbox")
        bindings[name] = loader()
    return bindings
