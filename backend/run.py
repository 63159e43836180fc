import argparse
import logging
import os
import threading
import time

import uvicorn


def _parent_watcher():
    """
    Best-effort guard: if the GUI process that launched us dies, exit the
    backend to avoid orphaned processes and port collisions.
    """
    ppid = os.getppid()
    while True:
        try:
            # On Unix, kill(pid, 0) checks existence. If parent becomes init (ppid == 1), exit.
            if ppid == 1:
                os._exit(0)
            os.kill(ppid, 0)
        except OSError:
            os._exit(0)
        time.sleep(3)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Courier API Runner")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host interface to bind")
    parser.add_argument("--port", type=int, default=8333, help="Port to run the backend on")
    parser.add_argument("--dir", type=str, default="./workspace", help="Workspace directory for data")
    parser.add_argument("--log-level", type=str, default="info", choices=["debug", "info", "warning", "error"])
    parser.add_argument("--watch-parent", action="store_true", help="Exit when the launching process exits")

    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Settings are read from the environment at import time
    os.environ["COURIER_WORKSPACE"] = args.dir

    from courier.main import app

    if args.watch_parent:
        threading.Thread(target=_parent_watcher, daemon=True).start()

    logging.getLogger("courier").info("Starting Courier on http://%s:%s (workspace %s)", args.host, args.port, os.path.abspath(args.dir))

    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
