import logging
import socket
import sys
import threading
import webbrowser

import uvicorn

import config
from center.call_center import CallCenter
from server.app import create_app

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("callcenter")


def find_available_port(start: int, end: int) -> int:
    for port in range(start, end + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((config.HOST, port))
                return port
            except OSError:
                continue
    raise RuntimeError(f"No free port between {start} and {end}")


def main():
    for d in [config.DATA_DIR, config.RECORDINGS_DIR, config.TRANSCRIPTS_DIR]:
        d.mkdir(parents=True, exist_ok=True)

    try:
        port = find_available_port(config.PORT, config.PORT + 20)
    except RuntimeError as e:
        logger.error(str(e))
        sys.exit(1)

    if port != config.PORT:
        logger.info("Port %d in use, using %d", config.PORT, port)
    config.PORT = port

    center = CallCenter.build()

    # Load Whisper model in background
    capability = center.live.capability

    def preload_whisper():
        try:
            logger.info("Preloading Whisper model in background...")
            capability._load_model()
        except Exception as e:
            logger.warning("Could not preload Whisper: %s", e)

    if capability is not None:
        threading.Thread(target=preload_whisper, daemon=True).start()

    app = create_app(center)

    url = f"http://{config.HOST}:{config.PORT}/docs"
    logger.info("Call center running at %s", url)
    if "--open" in sys.argv:
        webbrowser.open(url)

    try:
        uvicorn.run(app, host=config.HOST, port=config.PORT, log_level="warning")
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
