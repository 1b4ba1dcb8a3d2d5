#!/usr/bin/env python3
"""
Stability AI Image Client
=========================
Command-line front end that sends a prompt to the Stability AI gRPC API,
writes every returned image to a temporary file and prints the artifact
metadata (type, MIME, text, tokens, classifier verdicts).

Usage:
    python image_client.py a cat sitting on a sofa
    python image_client.py cyberpunk city at night --width 768 --height 768
    python image_client.py sunset over mountains -e stable-diffusion-v1 -a sk-...

Requirements:
    pip install -e .
"""

import argparse
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional, TextIO

from google.protobuf import text_format
from google.protobuf.internal.enum_type_wrapper import EnumTypeWrapper

from stability_client import (
    DEFAULT_API_HOST,
    DEFAULT_ENGINE,
    APIConnectionError,
    StabilityClient,
    StabilityError,
    generation,
    with_api_host,
    with_api_key,
    with_engine,
    with_timeout,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

DEFAULT_WIDTH = 512
DEFAULT_HEIGHT = 512
TEMPFILE_PREFIX = "stabilityai."
TEMPFILE_SUFFIX = ".png"
LOG_FORMAT = "stabilityai: %(asctime)s %(message)s"

log = logging.getLogger("stabilityai.cli")


# ============================================================================
# CUSTOM EXCEPTIONS
# ============================================================================

class CLIError(Exception):
    """Base exception for command-line errors"""
    pass


class UsageError(CLIError):
    """Invalid command-line usage"""
    pass


class ArtifactWriteError(CLIError):
    """An artifact could not be written to disk"""
    pass


# ============================================================================
# OUTPUT
# ============================================================================

def build_prompt(words: Iterable[str]) -> str:
    """
    Join the positional arguments into the prompt text.

    Raises:
        UsageError: If no prompt text was given
    """
    prompt = " ".join(words)
    if not prompt.strip():
        raise UsageError("No prompt specified")
    return prompt


def write_artifact(data: bytes, output_dir: Optional[str] = None) -> Path:
    """
    Write artifact bytes to a new uniquely named temporary file.

    Args:
        data: Binary artifact payload
        output_dir: Directory for the file (system temp dir if None)

    Returns:
        Path of the written file

    Raises:
        ArtifactWriteError: If the file cannot be created or written
    """
    try:
        with tempfile.NamedTemporaryFile(
            prefix=TEMPFILE_PREFIX,
            suffix=TEMPFILE_SUFFIX,
            dir=output_dir,
            delete=False
        ) as fd:
            fd.write(data)
            return Path(fd.name)
    except OSError as e:
        raise ArtifactWriteError(f"Failed to write temp file: {e}") from e


def _enum_name(enum_type: EnumTypeWrapper, value: int) -> str:
    """Return the name of an enum value, or the number when it is unknown."""
    try:
        return enum_type.Name(value)
    except ValueError:
        return str(value)


def render_artifact(artifact: generation.Artifact, out: TextIO, output_dir: Optional[str] = None) -> None:
    """
    Print one artifact; binary payloads are written to a temporary file.

    Args:
        artifact: Artifact to render
        out: Stream to print to
        output_dir: Directory for written files (system temp dir if None)
    """
    print(f"ID       : {artifact.id}", file=out)
    print(f"Type     : {_enum_name(generation.ArtifactType, artifact.type)}", file=out)
    print(f"MIME     : {artifact.mime}", file=out)
    print(f"Magic    : {artifact.magic}", file=out)

    if artifact.HasField("text"):
        print(f"Text     : {artifact.text}", file=out)
    if artifact.HasField("tokens"):
        print(f"Tokens   : {text_format.MessageToString(artifact.tokens, as_one_line=True)}", file=out)
    if artifact.HasField("binary"):
        try:
            path = write_artifact(artifact.binary, output_dir)
        except ArtifactWriteError as e:
            print(f"❌ {e}", file=out)
        else:
            print(f"Written to file {path}", file=out)
    if artifact.HasField("classifier"):
        for category in artifact.classifier.categories:
            print(f"Category : {category.name}", file=out)
            print(f"Action   : {_enum_name(generation.Action, category.action)}", file=out)
            for concept in category.concepts:
                print(f"Concept  : {concept.concept}, threshold: {concept.threshold:f}", file=out)
    print(file=out)


def render_answers(
    answers: List[generation.Answer],
    out: Optional[TextIO] = None,
    output_dir: Optional[str] = None
) -> None:
    """
    Print every artifact of every answer, saving binary payloads to disk.

    A failed write is reported for that artifact only; the remaining
    artifacts are still rendered.
    """
    if out is None:
        out = sys.stdout
    for idx, answer in enumerate(answers, start=1):
        print(f"{idx}) received {len(answer.artifacts)} artifacts", file=out)
        for artifact in answer.artifacts:
            render_artifact(artifact, out, output_dir)


# ============================================================================
# CLI INTERFACE
# ============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="Generate images using the Stability AI gRPC API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s a cat sitting on a sofa
    %(prog)s cyberpunk city at night -W 768 -H 768
    %(prog)s sunset -a sk-... -p grpc.stability.ai:443

Environment Variables:
    STABILITY_API_KEY     Default API key
    STABILITY_API_HOST    Default API host
        """
    )

    parser.add_argument(
        "prompt",
        nargs="*",
        help="Prompt words, joined with spaces"
    )

    parser.add_argument(
        "--api-key", "-a",
        type=str,
        default=os.environ.get("STABILITY_API_KEY", ""),
        help="Stability AI API key. Can also set STABILITY_API_KEY env var"
    )

    parser.add_argument(
        "--engine", "-e",
        type=str,
        default=DEFAULT_ENGINE,
        help=f"Stability AI engine (default: {DEFAULT_ENGINE})"
    )

    parser.add_argument(
        "--api-host", "-p",
        type=str,
        default=os.environ.get("STABILITY_API_HOST", DEFAULT_API_HOST),
        help=f"Stability AI API host (default: {DEFAULT_API_HOST})"
    )

    parser.add_argument(
        "--width", "-W",
        type=int,
        default=DEFAULT_WIDTH,
        help=f"Image width (default: {DEFAULT_WIDTH})"
    )

    parser.add_argument(
        "--height", "-H",
        type=int,
        default=DEFAULT_HEIGHT,
        help=f"Image height (default: {DEFAULT_HEIGHT})"
    )

    parser.add_argument(
        "--timeout", "-t",
        type=float,
        default=None,
        help="Deadline for the generation call in seconds (default: none)"
    )

    parser.add_argument(
        "--output-dir", "-o",
        type=str,
        default=None,
        help="Directory for the image files (default: system temp dir)"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log debug output"
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr
    )

    try:
        prompt = build_prompt(args.prompt)
    except UsageError as e:
        log.error("%s", e)
        print("Usage: python image_client.py your prompt here", file=sys.stderr)
        return 1

    client = StabilityClient(
        with_api_key(args.api_key),
        with_api_host(args.api_host),
        with_engine(args.engine),
        with_timeout(args.timeout),
    )

    try:
        with client:
            try:
                client.connect()
            except APIConnectionError as e:
                log.error("Failed to connect: %s", e)
                return 1

            try:
                answers = client.generate_image(prompt, args.width, args.height)
            except StabilityError as e:
                log.error("Failed to generate: %s", e)
                return 1
    except KeyboardInterrupt:
        print("\n⚠️ Interrupted by user", file=sys.stderr)
        return 1

    log.info("Received %d answers", len(answers))
    render_answers(answers, output_dir=args.output_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
