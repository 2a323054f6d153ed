from filegate.api.errors import register_exception_handlers, storage_error_handler

__all__ = ["register_exception_handlers", "storage_error_handler"]
