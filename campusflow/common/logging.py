import logging
import time
from functools import wraps
from typing import Callable

def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Sets up a logger with a standard format.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(level)
    return logger

def log_execution_time(logger: logging.Logger, threshold: float = 0.01):
    """
    Decorator to measure and log execution time of a tick handler.
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(f"{func.__name__} failed: {e}", exc_info=True)
                raise
            elapsed = time.perf_counter() - start
            if elapsed > threshold:
                logger.warning(
                    f"{func.__name__} executed in {elapsed:.3f}s (threshold {threshold:.3f}s)"
                )
            else:
                logger.debug(f"{func.__name__} executed in {elapsed:.3f}s")
            return result
        return wrapper
    return decorator
