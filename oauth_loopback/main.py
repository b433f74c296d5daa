"""
Manual run: start one callback session and print the captured callback URL.
Point the browser redirect page at the printed port and nonce. Settings come from the environment (config.py).
"""
import logging
import sys

from oauth_loopback.config import CALLBACK_EVENT, TIMEOUT_SECONDS
from oauth_loopback.errors import NoAvailablePortError
from oauth_loopback.events import QueueEventSink
from oauth_loopback.session import SessionStarter

logger = logging.getLogger(__name__)


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sink = QueueEventSink()
    starter = SessionStarter(sink)
    try:
        port, nonce = starter.start()
    except NoAvailablePortError as exc:
        logger.error("%s", exc)
        return 1

    print(f"port={port}")
    print(f"nonce={nonce}")
    try:
        received = sink.get(timeout=TIMEOUT_SECONDS if TIMEOUT_SECONDS > 0 else None)
    except KeyboardInterrupt:
        received = None

    if received is None:
        starter.shutdown(timeout=2)
        logger.error("No %s event received", CALLBACK_EVENT)
        return 1
    _, callback_url = received
    print(callback_url)
    # Let the listener flush its success response and retire on its own
    for server in starter.active_servers():
        server.join(timeout=5)
    return 0


if __name__ == "__main__":
    sys.exit(main())
