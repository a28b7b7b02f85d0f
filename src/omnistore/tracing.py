"""omnistore OpenTelemetry tracing integration.

Provides the tracing decorator applied to every Storage operation.

Security:
    - Never export absolute filesystem paths in span attributes
    - Object keys are exported only as SHA256 digests
    - No secrets, credentials or signed URLs in any span attribute

Environment Variables:
    OMNISTORE_OTEL_ENABLED: Set to "1" to emit spans (default: disabled)
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import os
from collections.abc import Callable
from typing import Any, TypeVar, cast

from opentelemetry import trace

from omnistore.object_store import UploadResult

F = TypeVar("F", bound=Callable[..., Any])

OMNISTORE_OTEL_ENABLED_ENV = "OMNISTORE_OTEL_ENABLED"
TRACER_NAME = "omnistore.storage"

_KEY_ARGUMENTS = ("storage_path", "prefix")

_tracer_provider: trace.TracerProvider | None = None


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean from environment variable."""
    val = os.environ.get(key, "").strip().lower()
    if val in ("1", "true", "yes"):
        return True
    if val in ("0", "false", "no", ""):
        return default
    return default


def _is_otel_enabled() -> bool:
    """Check if OpenTelemetry tracing is enabled."""
    return _get_env_bool(OMNISTORE_OTEL_ENABLED_ENV, False)


def configure_tracing(provider: trace.TracerProvider | None) -> None:
    """Use a specific tracer provider instead of the global one.

    Passing None restores the global provider.
    """
    global _tracer_provider
    _tracer_provider = provider


def _get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME, tracer_provider=_tracer_provider)


def _key_sha256(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def traced_storage_operation(operation: str) -> Callable[[F], F]:
    """Decorator to trace storage operations with OpenTelemetry.

    Emits spans with safe attributes (no raw keys, no paths, no secrets).

    Args:
        operation: Operation name (e.g., "upload_data", "list_objects").

    Returns:
        Decorated function that emits OTel spans when tracing is enabled.
    """

    def decorator(func: F) -> F:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            if not _is_otel_enabled():
                return func(self, *args, **kwargs)

            bound = signature.bind(self, *args, **kwargs)
            span_name = f"{TRACER_NAME}.{operation}"

            with _get_tracer().start_as_current_span(span_name) as span:
                span.set_attribute("storage.backend", getattr(self, "backend_name", "unknown"))
                span.set_attribute("omnistore.operation", operation)
                for name in _KEY_ARGUMENTS:
                    value = bound.arguments.get(name)
                    if isinstance(value, str):
                        span.set_attribute("omnistore.object_key_sha256", _key_sha256(value))
                        break

                try:
                    result = func(self, *args, **kwargs)
                except Exception as e:
                    span.set_attribute("error", True)
                    span.set_attribute("error.type", type(e).__name__)
                    raise

                _add_result_attributes(span, result, operation)
                return result

        return cast(F, wrapper)

    return decorator


def _add_result_attributes(span: Any, result: Any, operation: str) -> None:
    """Add result-based attributes to span safely.

    Only adds sizes and counts. Never adds locations or URLs.
    """
    if isinstance(result, UploadResult):
        span.set_attribute("omnistore.object_size_bytes", result.size)
    elif isinstance(result, bytes):
        span.set_attribute("omnistore.object_size_bytes", len(result))
    elif isinstance(result, int) and operation == "download_file":
        span.set_attribute("omnistore.object_size_bytes", result)
    elif isinstance(result, list) and operation == "list_objects":
        span.set_attribute("omnistore.object_count", len(result))
