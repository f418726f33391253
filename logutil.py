import os
import threading
import multiprocessing
import config

LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}


def enabled(level):
    threshold = LEVELS.get(getattr(config, "LOG_LEVEL", "INFO"), 20)
    return LEVELS.get(level, 20) >= threshold


def log(scope, msg, level="INFO"):
    if not enabled(level):
        return
    pid = os.getpid()
    proc = multiprocessing.current_process().name
    thread = threading.current_thread().name
    text = f"[{level} pid{pid} proc{proc} thr{thread} {scope}] {msg}"
    use_color = getattr(config, "LOG_COLOR", True) and os.getenv("NO_COLOR") is None
    if use_color:
        if level == "ERROR":
            text = f"\x1b[31m{text}\x1b[0m"
        elif level == "WARN":
            text = f"\x1b[33m{text}\x1b[0m"
        elif thread != "MainThread":
            # Networking/worker thread.
            text = f"\x1b[32m{text}\x1b[0m"
    print(text, flush=True)
