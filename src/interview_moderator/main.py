"""
Main entry point for the interview moderator console.
"""

import argparse
import asyncio
import logging
import sys

from interview_moderator.config import get_settings
from interview_moderator.io.console import ConsoleInterface, load_context
from interview_moderator.orchestrator.session_registry import SessionRegistry


def setup_logging() -> None:
    """Configure application logging."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


async def run_interview(argv: list[str] | None = None) -> None:
    """
    Run an interview session from the terminal.
    """
    parser = argparse.ArgumentParser(prog="interview-moderator")
    parser.add_argument("--context", required=True, help="Path to an interview context JSON file")
    parser.add_argument("--interview-id", default="console-interview", help="Interview identifier")
    parser.add_argument("--candidate-id", default="console-candidate", help="Candidate identifier")
    args = parser.parse_args(argv)

    settings = get_settings()
    logger = logging.getLogger(__name__)
    logger.info("Initializing interview moderator...")
    logger.debug(f"Using model: {settings.gemini_model}")

    context = load_context(args.context)
    registry = SessionRegistry(settings=settings)
    interface = ConsoleInterface(
        registry,
        context,
        interview_id=args.interview_id,
        candidate_id=args.candidate_id,
    )
    try:
        await interface.run()
    finally:
        await registry.close()


def main() -> None:
    """Main entry point for the application."""
    setup_logging()

    try:
        asyncio.run(run_interview(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nInterview session terminated by user.")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
