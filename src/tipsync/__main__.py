"""Main entry point for the sync engine."""
from tipsync import __version__
from tipsync.app import TipSyncApp
from tipsync.config import ensure_directories
from tipsync.logging_config import setup_logging


def main() -> None:
    """Run the engine in local-only mode."""
    # Ensure all required directories exist
    ensure_directories()

    setup_logging(f"Starting tipsync v{__version__} ...")

    TipSyncApp().run()


if __name__ == "__main__":
    main()
