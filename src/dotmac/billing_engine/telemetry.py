"""
OpenTelemetry accessors.

The engine only depends on the OpenTelemetry API; exporters and SDK providers are
installed by the hosting process. Without them every instrument is a no-op.
"""

from opentelemetry import metrics, trace


def get_tracer(name: str, version: str | None = None) -> trace.Tracer:
    """
    Get a tracer for the given component name.

    Args:
        name: Component/module name
        version: Optional component version

    Returns:
        OpenTelemetry Tracer instance
    """
    return trace.get_tracer(name, version or "")


def get_meter(name: str, version: str | None = None) -> metrics.Meter:
    """
    Get a meter for the given component name.

    Args:
        name: Component/module name
        version: Optional component version

    Returns:
        OpenTelemetry Meter instance
    """
    return metrics.get_meter(name, version or "")


def record_error(span: trace.Span, error: Exception) -> None:
    """Mark a span as failed with the given exception."""
    span.record_exception(error)
    span.set_status(trace.Status(trace.StatusCode.ERROR, str(error)))


__all__ = ["get_tracer", "get_meter", "record_error"]
