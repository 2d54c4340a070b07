from .log_context import log_context

__all__ = ["log_context"]
