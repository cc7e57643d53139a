"""Runs the Friendly Backup rendezvous server."""
import argparse
import threading

from rendezvous.config import load_config
from rendezvous.logs import configure_logging, get_logger
from rendezvous.server import MessageListener, ServerContext

logger = get_logger("rendezvous.main")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Friendly Backup rendezvous server")
    parser.add_argument("--config", default="config.yaml", help="path to the YAML config file")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging(config.log_level)

    context = ServerContext.from_config(config)
    listener = MessageListener(context)
    listener.start()

    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        listener.stop()


if __name__ == "__main__":
    main()
