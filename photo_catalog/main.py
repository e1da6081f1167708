import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from . import config
from .core import PhotoCatalogApp
from .exceptions import PhotoCatalogError
from .models import FilterOptions

def setup_logging(data_dir: Path, verbose: bool):
    """Sets up logging to both console and a file in the data directory."""
    log_level = logging.DEBUG if verbose else logging.INFO

    data_dir.mkdir(parents=True, exist_ok=True)
    log_file = data_dir / config.LOG_FILENAME

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Silence chatty libraries
    logging.getLogger("exifread").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)

def _add_filter_args(p: argparse.ArgumentParser):
    p.add_argument("--favorites", action="store_true", help="Only favorites")
    p.add_argument("--nsfw-only", action="store_true", help="Only NSFW-flagged images")
    p.add_argument("--exclude-nsfw", action="store_true", help="Hide NSFW-flagged images")
    p.add_argument("--folder", action="append", default=[], help="Restrict to a folder or ZIP root (repeatable)")
    p.add_argument("--from", dest="start_date", help="Earliest capture date (ISO)")
    p.add_argument("--to", dest="end_date", help="Latest capture date (ISO)")

def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Photo Catalog: index and query local images")
    p.add_argument("--data-dir", type=Path, default=config.DEFAULT_DATA_DIR,
                   help=f"Catalog database and thumbnail cache location (default: {config.DEFAULT_DATA_DIR})")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Watch a directory or ZIP archive")
    add.add_argument("path", type=Path)
    add.add_argument("--no-recursive", action="store_true", help="Only index the top-level directory")

    remove = sub.add_parser("remove", help="Stop watching a root (indexed images are kept)")
    remove.add_argument("path", type=Path)

    sub.add_parser("roots", help="List watched roots")

    lst = sub.add_parser("list", help="List indexed images")
    _add_filter_args(lst)
    lst.add_argument("--sort-by", default=config.DEFAULT_SORT_BY, choices=sorted(config.SORT_COLUMNS))
    lst.add_argument("--order", default=config.DEFAULT_SORT_ORDER, choices=sorted(config.SORT_ORDERS))
    lst.add_argument("--limit", type=int, default=config.DEFAULT_PAGE_LIMIT)
    lst.add_argument("--offset", type=int, default=0)
    lst.add_argument("--count", action="store_true", help="Print only the number of matches")

    search = sub.add_parser("search", help="Search filenames, tags, prompts and models")
    search.add_argument("text")
    _add_filter_args(search)

    show = sub.add_parser("show", help="Show everything known about one image")
    show.add_argument("image_id", type=int)

    annotate = sub.add_parser("annotate", help="Update favorite/NSFW/rating/tags/notes")
    annotate.add_argument("image_id", type=int)
    annotate.add_argument("--favorite", choices=["yes", "no"])
    annotate.add_argument("--nsfw", choices=["yes", "no"])
    annotate.add_argument("--rating", type=int)
    annotate.add_argument("--tags")
    annotate.add_argument("--notes")

    sub.add_parser("tree", help="Folder tree with image counts")

    tags = sub.add_parser("tags", help="Dump embedded tags of a file or zip::entry")
    tags.add_argument("path")

    sub.add_parser("clear", help="Remove every indexed image")
    sub.add_parser("clear-favorites", help="Unset every favorite flag")
    sub.add_parser("clear-nsfw", help="Unset every NSFW flag")
    sub.add_parser("rebuild", help="Clear the catalog and re-index all roots")
    sub.add_parser("rescan", help="Index files added since the last scan")
    sub.add_parser("watch", help="Watch all roots until interrupted")
    sub.add_parser("debug", help="Row counts and queue state")

    return p.parse_args(argv)

def _filters(args, **overrides) -> FilterOptions:
    return FilterOptions(
        favorites_only=args.favorites,
        nsfw_only=args.nsfw_only,
        exclude_nsfw=args.exclude_nsfw,
        folders=[str(Path(f).expanduser().resolve()) for f in args.folder],
        start_date=args.start_date,
        end_date=args.end_date,
        **overrides,
    )

def print_images(rows):
    print("id     | date_taken           | fav | nsfw | rating | path")
    print("-------+----------------------+-----+------+--------+----------")
    for r in rows:
        print(f"{r['id']:6d} | {(r['date_taken'] or '')[:19].ljust(20)} | "
              f"{'*' if r['is_favorite'] else ' '}   | {'x' if r['is_nsfw'] else ' '}    | "
              f"{str(r['rating'] or '').rjust(6)} | {r['path']}")
    print(f"({len(rows)} images)")

def print_tree(node, depth=0):
    marker = "[zip] " if node.is_archive else ""
    print(f"{'  ' * depth}{marker}{node.name} ({node.count})")
    for child in node.children:
        print_tree(child, depth + 1)

def print_json(data):
    print(json.dumps(data, indent=2, default=str))

def _annotation_fields(args) -> dict:
    fields = {}
    if args.favorite:
        fields['is_favorite'] = args.favorite == "yes"
    if args.nsfw:
        fields['is_nsfw'] = args.nsfw == "yes"
    if args.rating is not None:
        fields['rating'] = args.rating
    if args.tags is not None:
        fields['custom_tags'] = args.tags
    if args.notes is not None:
        fields['notes'] = args.notes
    return fields

async def run_command(args) -> int:
    app = PhotoCatalogApp(args.data_dir.expanduser(), show_progress=True)
    await app.start(restore=args.command in ("watch", "add", "remove", "rescan", "rebuild"))
    try:
        cmd = args.command

        if cmd == "add":
            result = await app.add_watch_root(args.path, recursive=not args.no_recursive)
            print(result.message)
            await app.wait_for_enrichment()
            return 0 if result.success else 1

        if cmd == "remove":
            result = await app.remove_watch_root(args.path.expanduser().resolve())
            print(result.message)
            return 0 if result.success else 1

        if cmd == "roots":
            for root in app.list_watch_roots():
                print(f"{root['display_name']:<30} {root['path']}")
            return 0

        if cmd == "list":
            filters = _filters(args, sort_by=args.sort_by, sort_order=args.order,
                               limit=args.limit, offset=args.offset)
            if args.count:
                print(app.count_photos(filters))
            else:
                print_images(app.get_photos(filters))
            return 0

        if cmd == "search":
            print_images(app.search_photos(args.text, _filters(args)))
            return 0

        if cmd == "show":
            meta = app.get_photo_metadata(args.image_id)
            if meta is None:
                print(f"No image with id={args.image_id}")
                return 1
            print_json(meta)
            return 0

        if cmd == "annotate":
            print_json(app.update_annotation(args.image_id, _annotation_fields(args)))
            return 0

        if cmd == "tree":
            for node in app.get_folder_tree():
                print_tree(node)
            return 0

        if cmd == "tags":
            print_json(await app.get_raw_tags(args.path))
            return 0

        if cmd == "clear":
            result = await app.clear_catalog()
        elif cmd == "clear-favorites":
            result = app.clear_favorites()
        elif cmd == "clear-nsfw":
            result = app.clear_nsfw_flags()
        elif cmd == "rebuild":
            result = await app.rebuild_catalog()
            await app.wait_for_enrichment()
        elif cmd == "rescan":
            result = await app.rescan_for_new_files()
            await app.wait_for_enrichment()
        elif cmd == "debug":
            print_json(app.debug_summary())
            return 0
        elif cmd == "watch":
            await app.rescan_for_new_files()
            logging.info("Watching for changes. Press Ctrl+C to stop.")
            while True:
                await asyncio.sleep(3600)
        else:
            raise PhotoCatalogError(f"Unknown command {cmd}")

        print(result.message)
        return 0 if result.success else 1
    finally:
        await app.close()

def main(argv=None):
    args = parse_args(argv)
    data_dir = args.data_dir.expanduser()

    setup_logging(data_dir, args.verbose)

    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logging.warning("Stopped by user.")
        sys.exit(1)
    except PhotoCatalogError as e:
        logging.error(str(e))
        sys.exit(1)
    except Exception:
        logging.exception("Fatal error.")
        sys.exit(1)

if __name__ == "__main__":
    main()
