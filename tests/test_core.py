import asyncio

import pytest

from photo_catalog import config
from photo_catalog.core import PhotoCatalogApp
from photo_catalog.exceptions import ValidationError
from photo_catalog.models import FilterOptions
from conftest import FakeObserver

PARAMS = "lighthouse at dusk\nSteps: 30, Sampler: DPM++ 2M, Seed: 77, Model: coastal_v1"


def _session(data_dir, body, on_change=None):
    """Runs `body(app)` against a started app whose watches use FakeObserver."""
    async def go():
        app = PhotoCatalogApp(data_dir, on_change=on_change)
        await app.start(restore=False)
        app.watcher.observer_factory = FakeObserver
        await app.watcher.restore_roots()
        try:
            return await body(app)
        finally:
            await app.close()
    return asyncio.run(go())


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"

@pytest.fixture
def library(photos_dir, make_image, make_zip):
    make_image(photos_dir / "beach.png")
    make_image(photos_dir / "gen" / "lighthouse.png", size=(90, 60), text={'parameters': PARAMS})
    make_zip(photos_dir / "packs" / "set.zip", {'one.png': None, 'two.png': None})
    return photos_dir


def test_add_root_and_enrich(data_dir, library):
    async def body(app):
        result = await app.add_watch_root(library)
        await app.wait_for_enrichment()
        return result, app.get_photos(FilterOptions(limit=config.NO_LIMIT))
    result, photos = _session(data_dir, body)

    assert result.success
    assert result.count == 4
    assert len(photos) == 4
    for photo in photos:
        assert photo['width'] and photo['height']
        assert photo['date_taken']
        assert photo['thumbnail_path']
    assert (data_dir / config.DB_FILENAME).exists()
    assert len(list((data_dir / config.THUMBNAIL_DIRNAME).glob("thumb_*.webp"))) == 4

def test_photo_metadata_and_search(data_dir, library):
    async def body(app):
        await app.add_watch_root(library)
        await app.wait_for_enrichment()
        [hit] = app.search_photos("coastal")
        return hit, app.get_photo_metadata(hit['id'])
    hit, meta = _session(data_dir, body)

    assert hit['filename'] == "lighthouse.png"
    assert (meta['width'], meta['height']) == (90, 60)
    assert meta['model'] == "coastal_v1"
    assert meta['seed'] == 77
    assert meta['raw_tags']['parameters'] == PARAMS

def test_annotations_notify_subscribers(data_dir, library):
    async def body(app):
        events = []
        await app.add_watch_root(library)
        await app.wait_for_enrichment()
        app.subscribe(lambda: events.append("changed"))

        photo_id = app.get_photos()[0]['id']
        annotation = app.update_annotation(photo_id, {'is_favorite': True, 'rating': 5})
        with pytest.raises(ValidationError):
            app.update_annotation(photo_id, {'rating': 7})

        favorites = app.count_photos(FilterOptions(favorites_only=True))
        cleared = app.clear_favorites()
        return events, annotation, favorites, cleared, app.count_photos(FilterOptions(favorites_only=True))
    events, annotation, favorites, cleared, after = _session(data_dir, body)

    assert annotation['is_favorite'] is True
    assert annotation['rating'] == 5
    assert favorites == 1
    assert cleared.count == 1
    assert after == 0
    assert len(events) == 2

def test_folder_tree_and_subfolders(data_dir, library):
    async def body(app):
        await app.add_watch_root(library)
        return app.get_folder_tree(), app.list_subfolders()
    [tree], subfolders = _session(data_dir, body)

    root = str(library.resolve())
    assert tree.path == root
    assert tree.count == 4
    assert {child.name: child.count for child in tree.children} == {'gen': 1, 'packs': 2}
    assert f"{root}/packs/set.zip" in subfolders

def test_watch_roots_listing(data_dir, library, tmp_path, make_zip):
    zip_path = make_zip(tmp_path / "loose.zip", {'a.png': None})

    async def body(app):
        await app.add_watch_root(library)
        await app.add_watch_root(zip_path)
        return app.list_watch_roots()
    roots = _session(data_dir, body)

    assert [r['display_name'] for r in roots] == [library.name, "loose.zip"]
    assert all(r['is_active'] for r in roots)
    assert roots[0]['recursive'] is True

def test_raw_tags_for_file_and_archive_entry(data_dir, library):
    async def body(app):
        file_tags = await app.get_raw_tags(str(library / "gen" / "lighthouse.png"))
        zip_tags = await app.get_raw_tags(f"{library / 'packs' / 'set.zip'}::one.png")
        return file_tags, zip_tags
    file_tags, zip_tags = _session(data_dir, body)

    assert file_tags['parameters'] == PARAMS
    assert isinstance(zip_tags, dict)

def test_clear_catalog_keeps_roots(data_dir, library):
    async def body(app):
        await app.add_watch_root(library)
        await app.wait_for_enrichment()
        result = await app.clear_catalog()
        return result, app.debug_summary()
    result, summary = _session(data_dir, body)

    assert result.success
    assert result.count == 4
    assert result.details['thumbnails'] == 4
    assert summary['tables']['images'] == 0
    assert summary['roots'] == [str(library.resolve())]
    assert not list((data_dir / config.THUMBNAIL_DIRNAME).glob("*.webp"))

def test_roots_survive_restart(data_dir, library, make_image):
    async def first(app):
        await app.add_watch_root(library)
        await app.wait_for_enrichment()
    _session(data_dir, first)

    async def second(app):
        make_image(library / "later.png")
        result = await app.rescan_for_new_files()
        await app.wait_for_enrichment()
        return result, app.list_watch_roots(), app.count_photos()
    result, roots, count = _session(data_dir, second)

    assert result.count == 1
    assert roots[0]['is_active'] is True
    assert count == 5

def test_remove_then_rebuild(data_dir, library):
    async def body(app):
        await app.add_watch_root(library)
        removed = await app.remove_watch_root(str(library.resolve()))
        kept = app.count_photos()
        rebuilt = await app.rebuild_catalog()
        return removed, kept, rebuilt, app.count_photos()
    removed, kept, rebuilt, after = _session(data_dir, body)

    assert removed.success
    assert kept == 4
    # With no roots left, a rebuild is a plain clear
    assert rebuilt.success
    assert after == 0

def test_debug_summary_shape(data_dir):
    async def body(app):
        return app.debug_summary()
    summary = _session(data_dir, body)
    assert set(summary) == {'tables', 'roots', 'queue', 'scans'}
    assert summary['queue'] == {'pending': 0, 'processed': 0, 'failed': 0}

def test_on_change_fires_when_images_are_indexed(data_dir, library):
    events = []

    async def body(app):
        await app.add_watch_root(library)
        await app.wait_for_enrichment()
    _session(data_dir, body, on_change=lambda: events.append("changed"))

    assert events
