"""Process memory usage reporting.

Functions:
    read_memory_usage: Reads the memory counters of the current process.
    report_memory_usage: Renders the memory counters of the current process as a table.
"""
import logging
from typing import Dict, Union

import tabulate

from .exceptions import DiagnosticsUnavailable

MEMORY_TYPES = ("VmPeak", "VmSize", "VmStk", "VmData", "VmRSS", "VmLib", "VmPTE")

logger = logging.getLogger(__name__)


def read_memory_usage(status_file: str = "/proc/self/status") -> Dict[str, float]:
    """Reads the memory counters of the current process.

    Counters are peak and current virtual size, stack, data segment, resident set, shared libraries and page tables.

    Args:
        status_file: A file in the format of Linux's `/proc/<pid>/status`.

    Raises:
        DiagnosticsUnavailable: If `status_file` can't be read.

    Returns:
        The counters in megabytes, in the order they appear in `status_file`.
    """
    try:
        with open(status_file) as f:
            lines = f.readlines()
    except OSError as e:
        raise DiagnosticsUnavailable(f"Failed to open {status_file}: {e}") from e

    memory_usage = dict()
    for line in lines:
        key, _, value = line.partition(':')
        if key in MEMORY_TYPES and value.split():
            try:
                memory_usage[key] = int(value.split()[0]) / 1024.0  # Convert [kB] to [MB].
            except ValueError:
                logger.debug(f"Skipping unparsable line {line.strip()}.")
    return memory_usage


def report_memory_usage(status_file: str = "/proc/self/status") -> Union[str, None]:
    """Renders the memory counters of the current process as a table.

    Args:
        status_file: A file in the format of Linux's `/proc/<pid>/status`.

    Returns:
        The table or `None` if the counters aren't available.
    """
    try:
        memory_usage = read_memory_usage(status_file=status_file)
    except DiagnosticsUnavailable as e:
        logger.warning(str(e))
        return None
    return tabulate.tabulate(list(memory_usage.items()),
                             headers=["Memory Type", "Size (MB)"],
                             floatfmt=".2f")
