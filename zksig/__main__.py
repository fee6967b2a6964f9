import argparse
import json
import logging
import sys

from zksig import __version__
from zksig.cid.addresser import ContentIdentifier, identify
from zksig.errors import InvalidInput


def _cmd_cid(args: argparse.Namespace) -> int:
    with open(args.file, "rb") as f:
        cid = identify(f.read())
    if args.json:
        print(json.dumps({"file": args.file, "cid": str(cid), "cid_v0": cid.to_v0().encode()}))
    else:
        print(str(cid) if not args.v0 else cid.to_v0().encode())
    return 0


def _cmd_normalize(args: argparse.Namespace) -> int:
    try:
        cid = ContentIdentifier.parse(args.cid)
    except InvalidInput as e:
        print(f"invalid content identifier: {e}", file=sys.stderr)
        return 2
    print(str(cid))
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="zksig", description="Agreement document identifiers")
    parser.add_argument("--version", action="version", version=f"zksig {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_cid = sub.add_parser("cid", help="print the content identifier of a document")
    p_cid.add_argument("file")
    p_cid.add_argument("--v0", action="store_true", help="print the CIDv0 (Qm...) form")
    p_cid.add_argument("--json", action="store_true")
    p_cid.set_defaults(func=_cmd_cid)

    p_norm = sub.add_parser("normalize", help="print the canonical (CIDv1) form of a CID")
    p_norm.add_argument("cid")
    p_norm.set_defaults(func=_cmd_normalize)

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
