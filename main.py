#!/usr/bin/env python3
"""Entry point for the conversational image assistant.

Usage:
    # Start a new image
    python main.py turn alice "A red fox in a forest"

    # Refine the image generated by the previous turn
    python main.py turn alice "the fox's face is wrong" --mode refine --image-url URL

    # Modify the current image
    python main.py turn alice "make it night time" --mode enhance

    # Show the stored conversation
    python main.py history alice
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import config
from config import Settings


def run_turn(args: argparse.Namespace, settings: Settings):
    """Process one turn from the CLI."""
    from imagechat.errors import ImageChatError
    from imagechat.volley import create_processor

    print(f"\n{'='*60}")
    print("Image Assistant")
    print(f"{'='*60}\n")
    print(f"User: {args.user}")
    print(f"Mode: {args.mode}")
    print(f"Input: {args.input}")
    if args.image_url:
        print(f"Active image: {args.image_url}")
    print()

    processor = create_processor(settings)
    try:
        result = asyncio.run(
            processor.process_image_turn(
                args.user,
                args.input,
                args.mode,
                active_image_url=args.image_url,
            )
        )
    except ImageChatError as e:
        print(f"Turn failed: {e}")
        sys.exit(1)

    volley = result.volley
    print(f"{'='*60}")
    print("RESPONSE")
    print(f"{'='*60}")
    print(volley.response_to_user)
    print()
    if volley.is_new_session:
        print("Started a new image session.")
    print(f"Refinement iteration: {volley.state_after.refinement_iteration_count}")
    print("Images:")
    for url in result.image_urls:
        print(f"  {url}")
    print()


def run_history(args: argparse.Namespace, settings: Settings):
    """Print the stored conversation for a user."""
    from imagechat.history import ConversationStore
    from imagechat.schemas import AssistantKind

    history = ConversationStore(settings.chat_history_dir).load(args.user, AssistantKind(args.kind))
    if history.is_empty():
        print(f"No conversation stored for {args.user}.")
        return

    for index, volley in enumerate(history.volleys):
        marker = " (new session)" if volley.is_new_session else ""
        print(f"[Volley {index + 1}] {volley.processing_mode.value}{marker}")
        print(f"  Input: {volley.user_input}")
        print(f"  Prompt: {volley.prompt}")
        print(f"  Iteration: {volley.state_after.refinement_iteration_count}")
        for url in volley.generated_image_urls:
            print(f"  Image: {url}")
        print()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Conversational Image Assistant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="dotenv file to load (default: .env lookup)",
    )
    parser.add_argument(
        "--data-dir", "-d",
        type=Path,
        default=None,
        help=f"Data directory (default: {config.DATA_DIR})",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log debug output",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Turn command
    turn_parser = subparsers.add_parser("turn", help="Process one user turn")
    turn_parser.add_argument("user", type=str, help="User id")
    turn_parser.add_argument("input", type=str, help="What the user typed")
    turn_parser.add_argument(
        "--mode", "-m",
        choices=["new", "refine", "enhance"],
        default="new",
        help="Processing mode (default: new)",
    )
    turn_parser.add_argument(
        "--image-url", "-i",
        type=str,
        default=None,
        help="Active image URL, required for refine mode",
    )

    # History command
    history_parser = subparsers.add_parser("history", help="Show a stored conversation")
    history_parser.add_argument("user", type=str, help="User id")
    history_parser.add_argument(
        "--kind", "-k",
        choices=["image_assistant", "license_assistant"],
        default="image_assistant",
        help="Assistant kind (default: image_assistant)",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = {"data_dir": args.data_dir} if args.data_dir else {}
    settings = Settings.from_env(env_file=args.env_file, **overrides)

    if args.command == "turn":
        run_turn(args, settings)
    elif args.command == "history":
        run_history(args, settings)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
