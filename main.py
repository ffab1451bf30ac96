import sys
import logging
import argparse
from typing import List, Optional

from epg import EpgLoadCancelled
from options import load_config
from playlist import PlaylistLoadError
from session import PlaylistSession

LOG = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Load an IPTV playlist and show what is on now.")
    p.add_argument("playlist", nargs="?", help="M3U/M3U8 file or http(s) url (default: last playlist)")
    p.add_argument("--epg", action="append", default=[], metavar="URL",
                   help="extra XMLTV feed (file or url); may be repeated")
    p.add_argument("--no-epg", action="store_true", help="skip guide download")
    p.add_argument("--search", default="", help="only list channels whose name or group matches")
    p.add_argument("--upcoming", type=int, default=None, help="number of upcoming programmes per channel")
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def _print_channels(session: PlaylistSession, query: str, upcoming: Optional[int], show_guide: bool):
    for group in session.groups(query):
        print(f"[{group}]")
        for ch in group.channels:
            extra = f" ({ch.source_count} sources)" if ch.source_count > 1 else ""
            print(f"  {ch.id:>4}  {ch.name}{extra}")
            if not show_guide:
                continue
            info = session.guide(ch, count=upcoming)
            if info.current is not None:
                print(f"        now  {info.current.time_range}  {info.current.title}  {int(info.progress * 100)}%")
            for p in info.upcoming:
                print(f"        next {p.time_range}  {p.title}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    session = PlaylistSession(cfg=load_config())
    try:
        if args.playlist:
            session.load(args.playlist, load_epg=False)
        elif session.load_last(load_epg=False) is None:
            print("No playlist given and no previous playlist to reload.", file=sys.stderr)
            return 2

        show_guide = not args.no_epg
        if show_guide:
            urls = session.epg_urls + args.epg
            if urls:
                for result in session.epg.load_epg(urls):
                    if not result.ok:
                        print(f"EPG feed failed: {result.url}: {result.error}", file=sys.stderr)
        _print_channels(session, args.search, args.upcoming, show_guide)
        return 0
    except PlaylistLoadError as e:
        print(str(e), file=sys.stderr)
        return 1
    except (EpgLoadCancelled, KeyboardInterrupt):
        print("Interrupted.", file=sys.stderr)
        return 130
    finally:
        session.close()


if __name__ == "__main__":
    sys.exit(main())
