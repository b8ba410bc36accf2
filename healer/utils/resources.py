"""
Resource Probe
==============
Current resident memory of this process, in megabytes.

Reads ``VmRSS`` from /proc/self/status on Linux. Elsewhere it falls back to
the peak RSS reported by ``resource.getrusage`` (kilobytes on Linux,
bytes on macOS). Returns 0.0 when neither source is available.
"""
import sys

_PROC_STATUS = "/proc/self/status"


def current_memory_mb() -> float:
    try:
        with open(_PROC_STATUS, "r", encoding="utf-8") as f:
            for line in f:
                if line.startswith("VmRSS:"):
                    return int(line.split()[1]) / 1024.0
    except OSError:
        pass

    try:
        import resource
    except ImportError:
        return 0.0
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    if sys.platform == "darwin":
        return peak / (1024.0 * 1024.0)
    return peak / 1024.0
