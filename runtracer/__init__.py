"""runtracer: client-side tracing with background batch ingestion."""

from typing import TYPE_CHECKING, Any, List

if TYPE_CHECKING:
    from runtracer.client import Client
    from runtracer.configuration import Configuration
    from runtracer.evaluation import evaluate
    from runtracer.evaluation.evaluator import EvaluationResult
    from runtracer.run_helpers import (
        flush,
        get_current_run,
        is_tracing,
        shutdown,
        trace,
        traceable,
    )
    from runtracer.run_trees import Run, RunTree
    from runtracer.tracer import (
        Tracer,
        configure,
        get_tracer,
        reset,
        tracing_context,
    )
    from runtracer.utils import (
        ConfigurationError,
        RunTracerError,
        TransportError,
        ValidationError,
    )

_LAZY_ATTRS = {
    "Client": "runtracer.client",
    "Configuration": "runtracer.configuration",
    "evaluate": "runtracer.evaluation",
    "EvaluationResult": "runtracer.evaluation.evaluator",
    "flush": "runtracer.run_helpers",
    "get_current_run": "runtracer.run_helpers",
    "is_tracing": "runtracer.run_helpers",
    "shutdown": "runtracer.run_helpers",
    "trace": "runtracer.run_helpers",
    "traceable": "runtracer.run_helpers",
    "Run": "runtracer.run_trees",
    "RunTree": "runtracer.run_trees",
    "Tracer": "runtracer.tracer",
    "configure": "runtracer.tracer",
    "get_tracer": "runtracer.tracer",
    "reset": "runtracer.tracer",
    "tracing_context": "runtracer.tracer",
    "ConfigurationError": "runtracer.utils",
    "RunTracerError": "runtracer.utils",
    "TransportError": "runtracer.utils",
    "ValidationError": "runtracer.utils",
}


def __getattr__(name: str) -> Any:
    if name == "__version__":
        from importlib import metadata

        try:
            return metadata.version(__package__)
        except metadata.PackageNotFoundError:
            return ""
    module_name = _LAZY_ATTRS.get(name)
    if module_name is not None:
        import importlib

        return getattr(importlib.import_module(module_name), name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["__version__", *_LAZY_ATTRS]


def __dir__() -> List[str]:
    return __all__
