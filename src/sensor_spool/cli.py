"""Command-line interface for sensor_spool.

Run:
    sensor-spool ls --dir ./sensor_data
    sensor-spool upload --config spool.json --host 192.168.1.10 --port 8000
"""

from __future__ import annotations

import argparse
import sys
import threading
from pathlib import Path

from pydantic import ValidationError

from sensor_spool.app.build import build
from sensor_spool.config.models import SpoolModel
from sensor_spool.io.segment_log import SegmentLogWriter
from sensor_spool.io.segments import describe, discover_segments, format_size, read_segment
from sensor_spool.net.transport import RequestsTransport
from sensor_spool.net.uploader import BatchResult, UploadCoordinator


def _load_model(args: argparse.Namespace) -> SpoolModel:
    model = SpoolModel.model_validate_json(Path(args.config).read_text(encoding="utf-8")) if args.config else SpoolModel()
    raw = model.model_dump()
    if getattr(args, "dir", None):
        raw["storage"]["directory"] = args.dir
    if getattr(args, "host", None):
        raw["upload"]["host"] = args.host
    if getattr(args, "port", None):
        raw["upload"]["port"] = args.port
    # the CLI never records; it only works on what is already on disk
    raw["recording"] = False
    return SpoolModel.model_validate(raw)


class _BatchWaiter:
    def __init__(self, show_progress: bool):
        self.show_progress = show_progress
        self.done = threading.Event()
        self.result: BatchResult | None = None

    def on_progress(self, percent: int) -> None:
        if self.show_progress:
            print(f"\r{percent:3d}%", end="", flush=True)

    def on_success(self, result: BatchResult) -> None:
        self.result = result
        self.done.set()

    def on_failure(self, result: BatchResult) -> None:
        self.result = result
        self.done.set()


def _cmd_ls(args: argparse.Namespace) -> int:
    model = _load_model(args)
    files = discover_segments(model.storage.directory)
    total = 0
    for p in files:
        info = describe(p)
        total += info.size
        print(info)
    print(f"{len(files)} segment(s), {format_size(total)}")
    return 0


def _cmd_cat(args: argparse.Namespace) -> int:
    n = 0
    for record in read_segment(args.path):
        sys.stdout.write(record.to_line())
        n += 1
    print(f"{n} record(s)", file=sys.stderr)
    return 0


def _cmd_ping(args: argparse.Namespace) -> int:
    model = _load_model(args)
    endpoint = model.upload.endpoint()
    if endpoint is None:
        print("no server configured (use --host/--port)", file=sys.stderr)
        return 2
    uploader = UploadCoordinator(RequestsTransport(), workers=1)
    try:
        res = uploader.probe(endpoint, timeout_s=model.upload.ping_timeout_s)
    finally:
        uploader.shutdown()
    print(f"{endpoint}: {res.message}")
    return 0 if res.ok else 1


def _cmd_upload(args: argparse.Namespace) -> int:
    model = _load_model(args)
    if model.upload.endpoint() is None:
        print("no server configured (use --host/--port)", file=sys.stderr)
        return 2
    app = build(model, use_logging=args.verbose, start_timer=False, resume=False)
    waiter = _BatchWaiter(show_progress=not args.verbose)
    try:
        batch_id = app.sync(waiter)
        if batch_id is None:
            print("nothing to upload")
            return 0
        waiter.done.wait()
    finally:
        app.close()
    r = waiter.result
    print(f"\nuploaded {r.success_count}/{r.total} segment(s)" + (" (cancelled)" if r.cancelled else ""))
    if r.errors:
        print(r.errors, file=sys.stderr)
    return 0 if r.ok else 1


def _cmd_purge(args: argparse.Namespace) -> int:
    model = _load_model(args)
    st = model.storage
    writer = SegmentLogWriter(
        st.directory,
        recording=lambda: False,
        compress=st.compress,
        max_segment_bytes=st.max_segment_bytes,
        start_timer=False,
        resume=False,
    )
    try:
        n = writer.purge(keep_recent=args.keep)
    finally:
        writer.close()
    print(f"deleted {n} segment(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="sensor-spool", description="Inspect and upload spooled sensor segments")
    sub = p.add_subparsers(dest="cmd", required=True)

    def common(sp: argparse.ArgumentParser, *, server: bool = False) -> None:
        sp.add_argument("--config", type=str, default=None, help="JSON config file")
        sp.add_argument("--dir", type=str, default=None, help="segment directory (overrides config)")
        if server:
            sp.add_argument("--host", type=str, default=None, help="collector host (localhost or IPv4)")
            sp.add_argument("--port", type=int, default=None, help="collector port")

    p_ls = sub.add_parser("ls", help="list segment files, newest first")
    common(p_ls)
    p_ls.set_defaults(func=_cmd_ls)

    p_up = sub.add_parser("upload", help="upload every pending segment")
    common(p_up, server=True)
    p_up.add_argument("-v", "--verbose", action="store_true", help="emit JSON logs instead of a progress line")
    p_up.set_defaults(func=_cmd_upload)

    p_ping = sub.add_parser("ping", help="check that the collector is reachable")
    common(p_ping, server=True)
    p_ping.set_defaults(func=_cmd_ping)

    p_purge = sub.add_parser("purge", help="delete segment files")
    common(p_purge)
    p_purge.add_argument("--keep", type=int, default=0, help="keep the N most recent files")
    p_purge.set_defaults(func=_cmd_purge)

    p_cat = sub.add_parser("cat", help="print the records of one segment as JSON lines")
    p_cat.add_argument("path", type=str)
    p_cat.set_defaults(func=_cmd_cat)

    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except (ValidationError, ValueError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
