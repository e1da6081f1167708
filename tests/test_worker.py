import asyncio

from photo_catalog.metadata.worker import ExtractionWorker
from photo_catalog.models import ImageRecord, FilesystemImage, ArchiveImage

PARAMS = "a red fox\nNegative prompt: text\nSteps: 25, Sampler: Euler, CFG scale: 5, Seed: 9"


def _index(db_ops, location, size=1):
    return db_ops.upsert_image(ImageRecord(location, file_size=size))


def test_enrichment_fills_derived_fields(db_ops, worker, photos_dir, make_image):
    path = make_image(photos_dir / "gen.png", size=(120, 80), text={'parameters': PARAMS})
    loc = FilesystemImage(str(path))
    image_id = _index(db_ops, loc)

    async def run():
        assert worker.enqueue(image_id, loc)
        await worker.wait_idle()
    asyncio.run(run())

    meta = db_ops.get_photo_metadata(image_id)
    assert (meta['width'], meta['height']) == (120, 80)
    assert meta['date_taken'] is not None
    assert meta['thumbnail_path'].endswith(f"thumb_{image_id}.webp")
    assert meta['has_ai_metadata'] is True
    assert meta['prompt'] == "a red fox"
    assert meta['steps'] == 25
    assert worker.processed == 1

def test_capture_date_from_exif(db_ops, worker, photos_dir, make_image):
    path = make_image(photos_dir / "cam.jpg", exif={306: "2019:12:24 18:00:00"})
    loc = FilesystemImage(str(path))
    image_id = _index(db_ops, loc)

    async def run():
        worker.enqueue(image_id, loc)
        await worker.wait_idle()
    asyncio.run(run())

    assert db_ops.get_image(image_id)['date_taken'] == "2019-12-24T18:00:00"
    assert db_ops.get_ai_metadata(image_id) is None

def test_archive_entry_enrichment(db_ops, worker, photos_dir, make_zip):
    zip_path = make_zip(photos_dir / "set.zip", {'sub/c.png': None})
    key = f"{zip_path}::sub/c.png"
    image_id = _index(db_ops, ArchiveImage(str(zip_path), "sub/c.png"))

    async def run():
        worker.enqueue(image_id, key)
        await worker.wait_idle()
    asyncio.run(run())

    row = db_ops.get_image(image_id)
    assert (row['width'], row['height']) == (40, 30)
    assert row['date_taken'] is not None

def test_deleted_image_is_skipped_quietly(db_ops, worker, thumbnails, photos_dir, make_image):
    path = make_image(photos_dir / "gen.png", text={'parameters': PARAMS})
    loc = FilesystemImage(str(path))
    image_id = _index(db_ops, loc)

    async def run():
        worker.enqueue(image_id, loc)
        db_ops.delete_image_by_path(str(path))
        await worker.wait_idle()
    asyncio.run(run())

    assert worker.failed == 0
    assert db_ops.table_counts() == {
        'images': 0, 'user_metadata': 0, 'ai_metadata': 0, 'watch_directories': 0,
    }

def test_failed_decode_keeps_bare_record(db_ops, worker, photos_dir, make_image):
    bad = photos_dir / "broken.png"
    bad.write_bytes(b"not a png")
    good = make_image(photos_dir / "good.png")
    bad_id = _index(db_ops, FilesystemImage(str(bad)))
    good_id = _index(db_ops, FilesystemImage(str(good)))

    async def run():
        worker.enqueue(bad_id, FilesystemImage(str(bad)))
        worker.enqueue(good_id, FilesystemImage(str(good)))
        await worker.wait_idle()
    asyncio.run(run())

    assert worker.failed == 1
    assert worker.processed == 1
    assert db_ops.get_image(bad_id)['width'] is None
    assert db_ops.get_image(good_id)['width'] == 64

def test_jobs_run_in_enqueue_order(db_ops, worker, photos_dir, make_image, monkeypatch):
    order = []
    original = ExtractionWorker._extract

    def tracking(self, job):
        order.append(job.image_id)
        return original(self, job)
    monkeypatch.setattr(ExtractionWorker, "_extract", tracking)

    jobs = []
    for name in ("c.png", "a.png", "b.png"):
        loc = FilesystemImage(str(make_image(photos_dir / name)))
        jobs.append((_index(db_ops, loc), loc))

    async def run():
        for image_id, loc in jobs:
            worker.enqueue(image_id, loc)
        await worker.wait_idle()
    asyncio.run(run())

    assert order == [image_id for image_id, _ in jobs]

def test_enqueue_deduplicates(db_ops, worker, photos_dir, make_image):
    loc = FilesystemImage(str(make_image(photos_dir / "a.png")))
    image_id = _index(db_ops, loc)

    async def run():
        first = worker.enqueue(image_id, loc)
        second = worker.enqueue(image_id, loc)
        await worker.wait_idle()
        return first, second
    assert asyncio.run(run()) == (True, False)
    assert worker.processed == 1

def test_clear_queue_drops_pending_jobs(db_ops, worker, photos_dir, make_image):
    jobs = []
    for i in range(4):
        loc = FilesystemImage(str(make_image(photos_dir / f"{i}.png")))
        jobs.append((_index(db_ops, loc), loc))

    async def run():
        for image_id, loc in jobs:
            worker.enqueue(image_id, loc)
        # The first job has been popped by the time the drain task runs
        await asyncio.sleep(0)
        dropped = worker.clear_queue()
        await worker.wait_idle()
        return dropped
    dropped = asyncio.run(run())

    assert dropped == 3
    assert worker.pending == 0
    assert worker.processed == 1

def test_purge_cache(db_ops, worker, photos_dir, make_image):
    loc = FilesystemImage(str(make_image(photos_dir / "a.png")))
    image_id = _index(db_ops, loc)

    async def run():
        worker.enqueue(image_id, loc)
        await worker.wait_idle()
    asyncio.run(run())

    assert worker.purge_cache() == 1
    assert not worker.thumbnails.path_for(image_id).exists()

def test_wait_idle_without_jobs(worker):
    asyncio.run(worker.wait_idle())
    assert not worker.is_busy
