"""
Console logging helpers shared by the reconstruction stages.
"""

import time


def log_step(msg, indent=2):
    """Print a log message with consistent formatting."""
    prefix = " " * indent
    print(f"{prefix}[INFO] {msg}")


def log_warning(msg, indent=4):
    prefix = " " * indent
    print(f"{prefix}[WARNING] {msg}")


def log_error(msg, indent=2):
    prefix = " " * indent
    print(f"{prefix}[ERROR] {msg}")


def log_section(title):
    """Print a stage banner."""
    print("  " + "-" * 50)
    print(f"  {title}")
    print("  " + "-" * 50)


def log_header(title):
    """Print a formatted header."""
    print()
    print("=" * 70)
    print(f"  {title}")
    print("=" * 70)


def format_time(seconds):
    """Format seconds into human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.1f}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


def format_size(num_bytes):
    """Format a byte count, e.g. 1536 -> '1.5 KB'."""
    size = float(num_bytes)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


class StageTimer:
    """Collects wall-clock durations of named pipeline stages."""

    def __init__(self):
        self.timings = {}
        self._started = {}

    def start(self, name):
        self._started[name] = time.time()

    def stop(self, name):
        elapsed = time.time() - self._started.pop(name)
        self.timings[name] = self.timings.get(name, 0.0) + elapsed
        return elapsed
