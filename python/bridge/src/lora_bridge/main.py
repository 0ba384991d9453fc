"""Main entry point for the Lora bridge."""

import argparse
import asyncio
import logging
import os
import sys

import uvicorn

from .api import create_app
from .config import BridgeConfig
from .connection import Services
from .decision_model import GeminiDecisionModel
from .errors import FatalStartupError
from .memory import ConversationMemoryStore
from .readiness import ReadinessWatcher, StateFileSource
from .registry import SessionRegistry
from .speech import OpenAISpeechClient
from .tmux import TmuxAdapter

logger = logging.getLogger(__name__)


def build_services(config: BridgeConfig) -> Services:
    """Wire the shared collaborators from config and environment credentials.

    Args:
        config: Loaded bridge configuration

    Returns:
        Services ready to be started by the app
    """
    multiplexer = TmuxAdapter()
    readiness = config.readiness
    watcher = ReadinessWatcher(
        StateFileSource(readiness.state_dir),
        multiplexer=multiplexer,
        poll_interval=readiness.poll_interval,
        default_timeout=readiness.response_timeout,
        reactive=readiness.reactive,
        output_fallback=readiness.output_fallback,
        hooks_check_after=readiness.hooks_check_after,
        capture_lines=config.multiplexer.capture_lines,
    )

    google_key = os.environ.get("GOOGLE_API_KEY")
    model = GeminiDecisionModel(
        google_key,
        decision_model=config.get_model("decision"),
        summarizer_model=config.get_model("summarizer"),
        narrator_model=config.get_model("narrator"),
    )
    memory = ConversationMemoryStore(
        summarizer=model.summarize if model.available else None,
        max_context_tokens=config.memory.max_context_tokens,
        min_retained_turns=config.memory.min_retained_turns,
        max_facts=config.memory.max_facts,
        chars_per_token=config.memory.chars_per_token,
    )
    speech = OpenAISpeechClient(
        os.environ.get("OPENAI_API_KEY"),
        stt_model=config.voice.stt_model,
        tts_model=config.voice.tts_model,
        voice=config.voice.tts_voice,
    )

    return Services(
        config=config,
        multiplexer=multiplexer,
        registry=SessionRegistry(multiplexer, config.multiplexer.session_prefix),
        watcher=watcher,
        memory=memory,
        model=model,
        speech=speech,
    )


async def run_bridge(config: BridgeConfig, log_level: str = "info") -> None:
    """Run the bridge server until interrupted.

    Args:
        config: Loaded bridge configuration
        log_level: Log level passed through to uvicorn
    """
    services = build_services(config)

    if not await services.multiplexer.is_available():
        raise FatalStartupError("tmux is not installed or not on PATH")

    print(f"Lora bridge listening on ws://{config.host}:{config.port}/ws")
    print(f"Projects directory: {config.project_path('').resolve()}")
    print(f"Speech: {'enabled' if services.speech.available else 'disabled (OPENAI_API_KEY not set)'}")
    print(f"Decision model: {config.get_model('decision') if services.model.available else 'disabled (GOOGLE_API_KEY not set)'}")

    app = create_app(services)
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level=log_level,
    ))
    await server.serve()


def cli() -> None:
    """Command-line interface entry point."""
    parser = argparse.ArgumentParser(
        description="Lora bridge - voice-driven agent terminal sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment variables:
  GOOGLE_API_KEY   Gemini key for decisions, memory summaries and narration.
  OPENAI_API_KEY   Key for speech-to-text and text-to-speech.

Without either key the bridge still runs: utterances go to the agent as-is
and spoken responses are sent as text only.
"""
    )

    parser.add_argument(
        "--config",
        default=".lora/config.yaml",
        help="Path to config file (default: .lora/config.yaml)"
    )
    parser.add_argument("--host", help="Override server host")
    parser.add_argument("--port", type=int, help="Override server port")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = BridgeConfig.load(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    try:
        asyncio.run(run_bridge(config, args.log_level))
    except FatalStartupError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    cli()
