#!/usr/bin/env python3
"""
Run card detection + rectification on photos from disk.

    python tools/scan_card.py photo.jpg [more.jpg ...] --out_dir out/ --viz
    python tools/scan_card.py photo.jpg --interactive

Photos are processed one at a time. When enhancement is unavailable the
original is copied to the output directory unchanged.
"""
from __future__ import annotations
import argparse
import logging
import os
import shutil
import sys
from datetime import datetime

from cardscan.core.config import load_cfg
from cardscan.core.runtime import acquire_runtime
from cardscan.core.errors import RuntimeUnavailableError
from cardscan.scanner import auto_rectify, detect_and_rectify, encode_result

log = logging.getLogger("scan_card")


def _setup_logging(debug: bool, log_dir: str | None) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        logfile = os.path.join(log_dir, f"scan_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log")
        handlers.append(logging.FileHandler(logfile))
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO,
                        format="[%(levelname)s] %(message)s", handlers=handlers)
    if log_dir:
        log.info("[logging] Writing debug output to: %s", handlers[-1].baseFilename)


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Detect a card in each photo, rectify it and save the result.")
    ap.add_argument("images", nargs="+", help="Input photo paths.")
    ap.add_argument("--interactive", action="store_true",
                    help="Confirm/adjust the corners in a window before rectifying.")
    ap.add_argument("--config", default=None, help="YAML config (default: $CARDSCAN_CONFIG or built-ins).")
    ap.add_argument("--out_dir", default="output", help="Directory for outputs.")
    ap.add_argument("--ext", default=None, help="Output format, e.g. .jpg or .png (default from config).")
    ap.add_argument("--viz", action="store_true", help="Also write <name>_viz.png with the detected quad.")
    ap.add_argument("--surface", type=int, nargs=2, metavar=("W", "H"), default=None,
                    help="Preview size for --interactive.")
    ap.add_argument("--debug", action="store_true", help="Verbose detector diagnostics.")
    ap.add_argument("--log", default=None, metavar="DIR", help="Also write a timestamped log file into DIR.")
    args = ap.parse_args(argv)

    _setup_logging(args.debug, args.log)
    cfg = load_cfg(args.config)
    if args.debug:
        cfg["debug"] = True

    os.makedirs(args.out_dir, exist_ok=True)
    try:
        acquire_runtime(timeout=float(cfg["runtime"]["timeout_s"]))
    except RuntimeUnavailableError as exc:
        log.error("OpenCV unavailable (%s); copying originals through.", exc)
        for path in args.images:
            if os.path.exists(path):
                shutil.copy(path, args.out_dir)
        return 1

    from cardscan.io.ingest import load_image, normalize_ext, save_image

    try:
        ext = normalize_ext(args.ext or cfg["rectify"]["ext"])
    except ValueError as exc:
        ap.error(str(exc))

    presenter = None
    if args.interactive:
        from cardscan.refine.highgui import HighGuiPresenter
        presenter = HighGuiPresenter()

    enhanced = 0
    for path in args.images:
        base = os.path.splitext(os.path.basename(path))[0]
        try:
            photo = load_image(path)
        except FileNotFoundError as exc:
            log.error("%s", exc)
            continue

        if presenter is not None:
            res = detect_and_rectify(photo, presenter, cfg, surface=tuple(args.surface) if args.surface else None)
        else:
            res = auto_rectify(photo, cfg)

        if args.viz:
            from cardscan.geometry.detect import detect
            from cardscan.refine.session import draw_detection
            out_viz = os.path.join(args.out_dir, f"{base}_viz.png")
            save_image(out_viz, draw_detection(photo, detect(photo, cfg)))
            log.info("Saved visualization → %s", out_viz)

        data = encode_result(res, ext, cfg=cfg)
        if data is None:
            out = os.path.join(args.out_dir, os.path.basename(path))
            if os.path.abspath(out) != os.path.abspath(path):
                shutil.copyfile(path, out)
            log.info("%s: not enhanced (%s) → copied original to %s", path, res.reason, out)
            continue
        out = os.path.join(args.out_dir, f"{base}_card{ext}")
        with open(out, "wb") as f:
            f.write(data)
        enhanced += 1
        log.info("%s: %s strategy → %s", path, res.strategy, out)

    log.info("Enhanced %d/%d photo(s)", enhanced, len(args.images))
    return 0


if __name__ == "__main__":
    sys.exit(main())
