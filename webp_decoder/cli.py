"""Command line front end: check the native codec and decode images.

    python -m webp_decoder --self-test
    python -m webp_decoder image.webp https://example.com/anim.webp --dump out/

Logging and resolution options are reflected into the WEBP_DECODER_* environment
variables before anything is logged, so they behave exactly like setting those
variables by hand.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from webp_decoder import decoder
from webp_decoder.errors import CodecUnavailableError, SelfTestError, WebPDecoderError
from webp_decoder.export import save_frames
from webp_decoder.logger import setup_logger

EXIT_OK = 0
EXIT_DECODE_ERROR = 1
EXIT_CODEC_UNAVAILABLE = 2
EXIT_SELF_TEST_FAILED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="webp-decoder", description="Decode (animated) WebP images with libwebp")
    parser.add_argument("sources", nargs="*", help="Image files or http(s) URLs to decode")
    parser.add_argument("--self-test", action="store_true", help="Decode the bundled test image first")
    parser.add_argument("--dump", metavar="DIR", help="Write decoded frames as PNG files into DIR")
    parser.add_argument("--log-level", help="Set log level")
    parser.add_argument("--log-cats", help="Set log categories")
    parser.add_argument("--debug-load", action="store_true", help="Log native library resolution decisions")
    parser.add_argument("--side-by-side", action="store_true", help="Look for the libraries next to the app first")
    parser.add_argument("--library-dir", help="Directory to look for the libraries in first")
    return parser


def _apply_env_options(args: argparse.Namespace) -> None:
    if args.log_level:
        os.environ["WEBP_DECODER_LOG_LEVEL"] = args.log_level
    if args.log_cats:
        os.environ["WEBP_DECODER_LOG_CATS"] = args.log_cats
    if args.debug_load:
        os.environ["WEBP_DECODER_DEBUG_LOAD"] = "1"
    if args.side_by_side:
        os.environ["WEBP_DECODER_SIDE_BY_SIDE"] = "1"
    if args.library_dir:
        os.environ["WEBP_DECODER_LIBRARY_DIR"] = args.library_dir


def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://", "file://"))


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _apply_env_options(args)

    # Re-read the log level and categories now that the environment is set
    logger = setup_logger().getChild("cli")

    try:
        decoder.init()
        logger.info("native libraries loaded: %s", decoder.library_versions())
    except CodecUnavailableError as e:
        logger.error("Error loading native libs: %s", e)
        return EXIT_CODEC_UNAVAILABLE

    if args.self_test or not args.sources:
        try:
            decoder.self_test_ex()
            logger.info("Test decoding ok.")
        except (SelfTestError, WebPDecoderError) as e:
            logger.error("Decoder doesn't work: %s", e)
            return EXIT_SELF_TEST_FAILED

    status = EXIT_OK
    for index, source in enumerate(args.sources):
        try:
            image = decoder.decode_url(source) if _is_url(source) else decoder.decode_file(source)
        except WebPDecoderError as e:
            logger.error("%s: %s", source, e)
            status = EXIT_DECODE_ERROR
            continue
        except OSError as e:
            logger.error("%s: failed reading: %s", source, e)
            status = EXIT_DECODE_ERROR
            continue
        print(f"{source}: {image}")
        if args.dump:
            stem = Path(source).stem if not _is_url(source) else f"url{index}"
            for path in save_frames(image, args.dump, stem=stem):
                print(f"  {path}")
    return status


if __name__ == "__main__":
    sys.exit(main())
