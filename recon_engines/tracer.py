"""
recon_engines.tracer -- structured trace line for every pure engine call.

Responsibility:
    ``@traced_engine`` logs one ``engine_invoked`` record per call of a
    normalization, matching or proposal function: which engine and version
    ran, a fingerprint of the inputs that identify the call, and how long
    it took.  Combined with the run_id / record_ref bound by the
    coordinator, this lets an operator tie any decision in the audit chain
    back to the engine version that produced it.

Architecture position:
    Engines -- support for the pure layer.  Logging is its only side effect.

Invariants enforced:
    - The fingerprint covers the named parameters whether they were passed
      positionally, by keyword or left at their default.
    - Fingerprints reuse the audit chain's canonical JSON, so the same
      inputs hash the same way in every process.
    - Calls that raise are traced too (``outcome: "error"``) and the
      exception propagates unchanged.

Failure modes:
    - TypeError at decoration time: a fingerprint field is not a parameter
      of the wrapped function.
"""

from __future__ import annotations

import functools
import inspect
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from recon_kernel.logging_config import get_logger
from recon_kernel.utils.hashing import canonicalize_json, sha256_hex

logger = get_logger("engines.tracer")

TRACE_EVENT = "engine_invoked"
FINGERPRINT_LENGTH = 16


def input_fingerprint(arguments: Mapping[str, Any], fields: Iterable[str]) -> str:
    """Short hash of ``arguments`` restricted to ``fields``; "" when none are named."""
    selected = {name: arguments.get(name) for name in fields}
    if not selected:
        return ""
    return sha256_hex(canonicalize_json(selected))[:FINGERPRINT_LENGTH]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)
        unknown = set(fingerprint_fields) - set(signature.parameters)
        if unknown:
            raise TypeError(
                f"{func.__qualname__} has no parameter(s) {sorted(unknown)} to fingerprint"
            )

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            bound = signature.bind(*args, **kwargs)
            bound.apply_defaults()
            fingerprint = input_fingerprint(bound.arguments, fingerprint_fields)

            started = time.perf_counter()
            outcome = "ok"
            try:
                return func(*args, **kwargs)
            except Exception:
                outcome = "error"
                raise
            finally:
                logger.debug(
                    TRACE_EVENT,
                    extra={
                        "engine_name": engine_name,
                        "engine_version": engine_version,
                        "input_fingerprint": fingerprint,
                        "outcome": outcome,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                    },
                )

        return wrapper

    return decorator
