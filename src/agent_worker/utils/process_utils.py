"""Process signalling helpers for supervised AI CLI subprocesses."""

import os
import signal


def kill_process_tree(pid: int, sig: int = signal.SIGTERM) -> None:
    """Send signal to the process group, falling back to the single process.

    Runners spawn their CLI with start_new_session=True so the group reaches
    helper processes the tool forks (shells, language servers, docker exec).
    """
    try:
        pgid = os.getpgid(pid)
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError:
        # Not a group leader
        try:
            os.kill(pid, sig)
        except (ProcessLookupError, PermissionError):
            pass
