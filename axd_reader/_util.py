import os
import psutil


def get_int_env_var(var_name):
    """
    Retrieves an integer environment variable, returning None on missing values and conversion errors.
    """

    try:
        return int(os.environ[var_name])
    except (ValueError, KeyError):
        return None


def max_workers():
    n = get_int_env_var("AXD_MAX_CPUS")
    if n is None or n < 1:
        n = psutil.cpu_count(logical=False) or 1
    return n


MAX_WORKERS = max_workers()
