import argparse
import json
import logging
import sys
from pathlib import Path

from upkeep.core import codec
from upkeep.core.bundle import pack_file, unpack
from upkeep.core.entries import capture_local
from upkeep.core.exception import SyncAborted, UpkeepError
from upkeep.core.launch import DefaultLauncher, launch
from upkeep.core.manifest import ManifestBuilder
from upkeep.core.platforms import OS
from upkeep.core.resolver import classify
from upkeep.core.runtime.settings import Settings, load_settings
from upkeep.core.signing import (
    dump_private_key,
    dump_public_key,
    generate_key_pair,
    load_private_key,
    load_public_key,
)
from upkeep.core.sync import stage, update

EXIT_FAILED = 2
EXIT_UPDATE_REQUIRED = 3


def _ensure_logging(settings: Settings) -> None:
    fmt = '%(asctime)s - (%(threadName)-10s) - %(name)s - %(levelname)s - %(message)s'
    if (settings.log_format or "text").lower() == "json":
        # JSON payload already includes timestamp; keep formatter minimal.
        fmt = "%(message)s"
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=fmt,
    )


def _public_key(path):
    return load_public_key(path) if path else None


def _platform(token):
    return OS.parse(token) if token else None


def _parse_property(raw: str):
    """K=V or K=V@os."""
    if "=" not in raw:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {raw!r}")
    key, value = raw.split("=", 1)
    os_token = None
    if "@" in value:
        head, tail = value.rsplit("@", 1)
        if tail.lower() in {o.value for o in OS}:
            value, os_token = head, tail
    return key.strip(), value, os_token


def _cmd_scan(args) -> int:
    root = Path(args.dir).resolve()
    out = Path(args.out).resolve()
    builder = ManifestBuilder().base_uri(args.base_uri).base_path(args.base_path or root.as_posix())
    for key, value, os_token in args.property or []:
        builder.property(key, value, os_token)

    files = sorted(p for p in root.rglob("*") if p.is_file() and p.resolve() != out)
    for p in files:
        builder.file(capture_local(p, base_path=root))
    if args.sign_key:
        builder.signer(load_private_key(args.sign_key))

    manifest = builder.build()
    codec.write_file(manifest, out)

    res = {"manifest": str(out), "files": len(manifest.files), "signed": bool(manifest.signature)}
    if args.json:
        print(json.dumps(res, ensure_ascii=False))
    else:
        signed = "signed" if manifest.signature else "unsigned"
        print(f"OK: wrote {out} files={len(manifest.files)} ({signed})")
    return 0


def _cmd_status(args) -> int:
    manifest = codec.read_file(args.manifest, _public_key(args.public_key))
    res = classify(manifest, platform=_platform(args.os))
    if args.json:
        out = {
            "manifest": args.manifest,
            "platform": res.platform.value,
            "requires_update": res.requires_update,
            "entries": [{"path": c.entry.path, "target": str(c.target), "state": c.state.value} for c in res.entries],
        }
        print(json.dumps(out, ensure_ascii=False))
    else:
        for c in res.entries:
            print(f"{c.state.value:<8} {c.entry.path}")
        print(f"platform={res.platform.value} requires_update={'yes' if res.requires_update else 'no'}")
    return EXIT_UPDATE_REQUIRED if res.requires_update else 0


def _print_result(result, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result.as_dict(), ensure_ascii=False))
        return
    for o in result.outcomes:
        line = f"{o.status.value:<9} {o.entry.path}"
        if o.error is not None:
            line += f" - {o.error}"
        print(line)
    print(f"updated={len(result.fetched)} failed={len(result.failed)} skipped={len(result.skipped)}")


def _cmd_sync(args, settings: Settings) -> int:
    manifest = codec.read_file(args.manifest, _public_key(args.public_key))
    try:
        result = update(
            manifest,
            platform=_platform(args.os),
            settings=settings,
            abort_on_failure=True if args.abort_on_failure else None,
            workers=args.workers,
        )
    except SyncAborted as e:
        if e.result is not None:
            _print_result(e.result, args.json)
        print(f"ABORTED: {e}", file=sys.stderr)
        return EXIT_FAILED
    _print_result(result, args.json)
    return 0 if result.ok else EXIT_FAILED


def _cmd_bundle(args, settings: Settings) -> int:
    if args.bundle_cmd == "pack":
        manifest = codec.read_file(args.manifest, _public_key(args.public_key))
        out = pack_file(manifest, args.out, platform=_platform(args.os), password=args.password)
        res = {"bundle": str(out)}
        print(json.dumps(res, ensure_ascii=False) if args.json else f"OK: wrote {out}")
        return 0

    if args.bundle_cmd == "stage":
        manifest = codec.read_file(args.manifest, _public_key(args.public_key))
        try:
            result = stage(manifest, args.out, platform=_platform(args.os), settings=settings, password=args.password)
        except SyncAborted as e:
            print(f"ABORTED: {e}", file=sys.stderr)
            return EXIT_FAILED
        _print_result(result, args.json)
        return 0 if result.ok else EXIT_FAILED

    if args.bundle_cmd == "extract":
        _manifest, extractor = unpack(args.bundle, public_key=_public_key(args.public_key), password=args.password)
        written = extractor.extract(args.dest, platform=_platform(args.os))
        if args.json:
            print(json.dumps({"bundle": args.bundle, "files": [str(p) for p in written]}, ensure_ascii=False))
        else:
            for p in written:
                print(str(p))
            print(f"OK: extracted {len(written)} file(s)")
        return 0
    return 1


def _cmd_keys(args) -> int:
    private_key, public_key = generate_key_pair(bits=args.bits)
    priv = Path(args.private)
    pub = Path(args.public)
    priv.parent.mkdir(parents=True, exist_ok=True)
    pub.parent.mkdir(parents=True, exist_ok=True)
    priv.write_bytes(dump_private_key(private_key))
    pub.write_bytes(dump_public_key(public_key))
    print(f"OK: private={priv} public={pub}")
    return 0


def _cmd_launch(args, settings: Settings) -> int:
    manifest = codec.read_file(args.manifest, _public_key(args.public_key))
    platform = _platform(args.os)
    if args.sync:
        try:
            result = update(manifest, platform=platform, settings=settings)
        except SyncAborted as e:
            print(f"ABORTED: {e}", file=sys.stderr)
            return EXIT_FAILED
        if not result.ok and args.stop_on_update_error:
            _print_result(result, False)
            return EXIT_FAILED
    app_args = list(args.args or [])
    if app_args and app_args[0] == "--":
        app_args = app_args[1:]
    proc = launch(manifest, DefaultLauncher(app_args or None), platform=platform)
    return int(getattr(proc, "returncode", 0) or 0)


def main(argv=None) -> int:
    argv = argv or sys.argv[1:]
    parser = argparse.ArgumentParser(prog="upkeep", description="upkeep CLI")
    sp = parser.add_subparsers(dest="cmd", required=True)

    scanp = sp.add_parser("scan", help="Build a manifest from a local directory")
    scanp.add_argument("--dir", required=True, help="Directory whose files become manifest entries")
    scanp.add_argument("--base-uri", required=True, help="Remote base URI the files are served from")
    scanp.add_argument("--base-path", default=None, help="Install base path written to the manifest (defaults to --dir)")
    scanp.add_argument("--property", action="append", type=_parse_property, help="KEY=VALUE or KEY=VALUE@os (repeatable)")
    scanp.add_argument("--sign-key", default=None, help="PEM private key used to sign the manifest")
    scanp.add_argument("--out", required=True, help="Where to write the manifest")
    scanp.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    statp = sp.add_parser("status", help="Classify local files against a manifest (no fetch)")
    statp.add_argument("--manifest", required=True)
    statp.add_argument("--public-key", default=None, help="PEM public key; when set the signature must verify")
    statp.add_argument("--os", default=None, help="Target OS (windows, mac, linux, other)")
    statp.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    syncp = sp.add_parser("sync", help="Download missing and stale files")
    syncp.add_argument("--manifest", required=True)
    syncp.add_argument("--public-key", default=None)
    syncp.add_argument("--workers", type=int, default=None)
    syncp.add_argument("--abort-on-failure", action="store_true", help="Stop at the first failed file")
    syncp.add_argument("--os", default=None)
    syncp.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    bundlep = sp.add_parser("bundle", help="Bundle operations (offline transfer)")
    bsp = bundlep.add_subparsers(dest="bundle_cmd", required=True)

    packp = bsp.add_parser("pack", help="Pack installed files and their manifest into a bundle")
    stagep = bsp.add_parser("stage", help="Download pending files into a bundle instead of installing them")
    for p in (packp, stagep):
        p.add_argument("--manifest", required=True)
        p.add_argument("--public-key", default=None)
        p.add_argument("--out", required=True, help="Bundle (zip) to write")
        p.add_argument("--password", default=None, help="Encrypt with AES (pyzipper)")
        p.add_argument("--os", default=None, help="Only include entries applying to this OS")
        p.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    extp = bsp.add_parser("extract", help="Install the files carried by a bundle")
    extp.add_argument("--bundle", required=True)
    extp.add_argument("--dest", default=None, help="Extract here instead of the manifest targets")
    extp.add_argument("--public-key", default=None)
    extp.add_argument("--password", default=None)
    extp.add_argument("--os", default=None)
    extp.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    keysp = sp.add_parser("keys", help="Signing key helpers")
    ksp = keysp.add_subparsers(dest="keys_cmd", required=True)
    genp = ksp.add_parser("generate", help="Generate an RSA key pair (PEM)")
    genp.add_argument("--private", required=True)
    genp.add_argument("--public", required=True)
    genp.add_argument("--bits", type=int, default=2048)

    launchp = sp.add_parser("launch", help="Start the installed application")
    launchp.add_argument("--manifest", required=True)
    launchp.add_argument("--public-key", default=None)
    launchp.add_argument("--os", default=None)
    launchp.add_argument("--sync", action="store_true", help="Sync before launching")
    launchp.add_argument("--stop-on-update-error", action="store_true", help="Do not launch when the sync had failures")
    launchp.add_argument("args", nargs=argparse.REMAINDER, help="Arguments passed to the application")

    args = parser.parse_args(argv)
    settings = load_settings()
    _ensure_logging(settings)

    try:
        if args.cmd == "scan":
            return _cmd_scan(args)
        if args.cmd == "status":
            return _cmd_status(args)
        if args.cmd == "sync":
            return _cmd_sync(args, settings)
        if args.cmd == "bundle":
            return _cmd_bundle(args, settings)
        if args.cmd == "keys":
            return _cmd_keys(args)
        if args.cmd == "launch":
            return _cmd_launch(args, settings)
    except UpkeepError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
