from __future__ import annotations

import asyncio
import logging

import pytest

from conftest import StaticOracle, make_pdf
from docpages.access.models import PageUrl, Role
from docpages.errors import ConversionError, ErrorKind, StorageNotFoundError
from docpages.recovery.models import PageError
from docpages.storage.blob import page_blob_path
from docpages.viewer.session import PageStatus


def test_two_sessions_share_one_conversion_and_get_identical_urls(harness_factory) -> None:
    h = harness_factory(delay_s=0.01)
    svc = h.service

    async def scenario():
        await h.register("doc-1", pages=5)
        first, second = await asyncio.gather(svc.ensure_pages("doc-1"), svc.ensure_pages("doc-1"))
        urls_a = [await svc.get_page("doc-1", n, Role.MEMBER) for n in range(1, 6)]
        urls_b = [await svc.get_page("doc-1", n, Role.MEMBER) for n in range(1, 6)]
        return first, second, urls_a, urls_b

    first, second, urls_a, urls_b = asyncio.run(scenario())

    assert h.convert_calls == ["doc-1"]
    assert [p.page_number for p in first.pages] == [1, 2, 3, 4, 5]
    assert first == second
    assert all(isinstance(u, PageUrl) for u in urls_a)
    assert urls_a == urls_b
    assert sorted(h.rasterizer.calls) == [1, 2, 3, 4, 5]


def test_missing_page_blob_is_regenerated_from_source(harness_factory, caplog) -> None:
    caplog.set_level(logging.INFO, logger="docpages.recovery.engine")
    h = harness_factory(alternate_buckets=1)
    svc = h.service

    async def scenario():
        await h.register("doc-1", pages=5)
        await svc.ensure_pages("doc-1")
        before = await svc.cache.get("doc-1", 3)
        await h.pages.delete(page_blob_path("doc-1", 3))
        h.clock.advance(minutes=1)
        url = await svc.get_page("doc-1", 3, Role.MEMBER)
        after = await svc.cache.get("doc-1", 3)
        return before, url, after

    before, url, after = asyncio.run(scenario())

    assert isinstance(url, PageUrl)
    assert url.page_number == 3
    assert "document-pages/doc-1/page-3" in url.url
    assert after.created_at > before.created_at
    assert asyncio.run(h.pages.exists(page_blob_path("doc-1", 3)))
    assert "alternate_bucket failed" in caplog.text
    assert "regenerate_from_source succeeded" in caplog.text


def test_access_is_checked_before_conversion(harness_factory) -> None:
    h = harness_factory(oracle=StaticOracle(allowed={("doc-1", Role.MEMBER)}))
    svc = h.service

    async def scenario():
        await h.register("doc-1", pages=2)
        return await svc.get_page("doc-1", 1, Role.ANONYMOUS)

    res = asyncio.run(scenario())

    assert isinstance(res, PageError)
    assert res.kind == ErrorKind.PERMISSION_DENIED
    assert not res.recoverable
    assert h.convert_calls == []


def test_page_beyond_the_document_is_an_error_without_recovery(harness) -> None:
    svc = harness.service

    async def scenario():
        await harness.register("doc-1", pages=2)
        return await svc.get_page("doc-1", 3, Role.MEMBER)

    res = asyncio.run(scenario())

    assert isinstance(res, PageError)
    assert res.kind == ErrorKind.STORAGE_NOT_FOUND
    assert res.attempts == 0
    assert harness.convert_calls == ["doc-1"]


def test_page_numbers_start_at_one(harness) -> None:
    with pytest.raises(ValueError):
        asyncio.run(harness.service.get_page("doc-1", 0, Role.MEMBER))


def test_broken_page_is_served_with_relaxed_encoding(harness) -> None:
    harness.rasterizer.fail_dpi_above = 120
    svc = harness.service

    async def scenario():
        await harness.register("doc-1", pages=2)
        url = await svc.get_page("doc-1", 2, Role.PLATFORM_USER)
        return url, await svc.cache.get("doc-1", 2)

    url, cached = asyncio.run(scenario())

    assert isinstance(url, PageUrl)
    assert not url.placeholder
    assert not url.watermark
    assert cached is not None


def test_unrenderable_page_gets_a_placeholder(harness) -> None:
    harness.rasterizer.fail_pages = {2}
    svc = harness.service

    async def scenario():
        await harness.register("doc-1", pages=3)
        page2 = await svc.get_page("doc-1", 2, Role.MEMBER)
        page3 = await svc.get_page("doc-1", 3, Role.MEMBER)
        return page2, page3, await svc.cache.get("doc-1", 2)

    page2, page3, cached = asyncio.run(scenario())

    assert page2.placeholder
    assert isinstance(page3, PageUrl) and not page3.placeholder
    assert cached is None


def test_ensure_pages_survives_a_database_blip(harness) -> None:
    svc = harness.service

    async def scenario():
        await harness.register("doc-1", pages=3)
        await svc.ensure_pages("doc-1")
        harness.metadata.broken = True
        return await svc.ensure_pages("doc-1")

    result = asyncio.run(scenario())

    assert result.error is None
    assert [p.page_number for p in result.pages] == [1, 2, 3]
    assert harness.metadata.reconnects == 1


def test_ensure_pages_reports_document_errors(harness) -> None:
    result = asyncio.run(harness.service.ensure_pages("missing"))

    assert result.pages == []
    assert result.error.kind == ErrorKind.STORAGE_NOT_FOUND
    assert result.error.message == "This page could not be found."


def test_refresh_page_url_reissues_a_link(harness) -> None:
    svc = harness.service

    async def scenario():
        await harness.register("doc-1", pages=1)
        first = await svc.get_page("doc-1", 1, Role.READER)
        harness.clock.advance(hours=2)
        refreshed = await svc.refresh_page_url("doc-1", 1, Role.READER, reason=ErrorKind.URL_EXPIRED)
        return first, refreshed

    first, refreshed = asyncio.run(scenario())

    assert isinstance(refreshed, PageUrl)
    assert refreshed.expires_at > first.expires_at
    assert refreshed.url != first.url


def test_invalidate_forces_reconversion(harness) -> None:
    svc = harness.service

    async def scenario():
        await harness.register("doc-1", pages=2)
        await svc.ensure_pages("doc-1")
        removed = await svc.invalidate("doc-1")
        blobs = await harness.pages.list("doc-1/")
        doc = await harness.metadata.get_document("doc-1")
        again = await svc.ensure_pages("doc-1")
        return removed, blobs, doc, again

    removed, blobs, doc, again = asyncio.run(scenario())

    assert removed == 2
    assert blobs == []
    assert doc.total_pages is None
    assert not again.from_cache
    assert harness.convert_calls == ["doc-1", "doc-1"]


def test_reupload_replaces_pages(harness) -> None:
    svc = harness.service

    async def scenario():
        await svc.register_document("doc-1", make_pdf(4))
        first = await svc.ensure_pages("doc-1")
        doc = await svc.register_document("doc-1", make_pdf(2))
        second = await svc.ensure_pages("doc-1")
        return first, doc, second

    first, doc, second = asyncio.run(scenario())

    assert first.total_pages == 4
    assert doc.total_pages == 2
    assert [p.page_number for p in second.pages] == [1, 2]


async def _until_rendering(h) -> None:
    for _ in range(200):
        if h.rasterizer.calls:
            return
        await asyncio.sleep(0.005)
    raise AssertionError("conversion never started")


def test_reupload_during_conversion_discards_the_old_pages(harness_factory) -> None:
    h = harness_factory(delay_s=0.05, conversion_workers=1)
    svc = h.service

    replacement = make_pdf(2)

    async def scenario():
        await svc.register_document("doc-1", make_pdf(4))
        pending = asyncio.create_task(svc.ensure_pages("doc-1"))
        await _until_rendering(h)
        doc = await svc.register_document("doc-1", replacement)
        result = await pending
        again = await svc.ensure_pages("doc-1")
        blobs = await h.pages.list("doc-1/")
        records = await h.metadata.find_page_records("doc-1")
        return doc, result, again, blobs, records, await h.metadata.get_document("doc-1")

    doc, result, again, blobs, records, stored = asyncio.run(scenario())

    rendered_from_replacement = {n for n, src in zip(h.rasterizer.calls, h.rasterizer.sources) if src == replacement}
    assert rendered_from_replacement == {1, 2}
    assert again.from_cache
    assert again.pages == result.pages
    assert doc.total_pages == 2
    assert result.total_pages == 2
    assert [p.page_number for p in result.pages] == [1, 2]
    assert [b.path for b in blobs] == ["doc-1/page-1", "doc-1/page-2"]
    assert [r.page_number for r in records] == [1, 2]
    assert stored.total_pages == 2
    assert len(h.convert_calls) >= 2
    assert svc.active_jobs() == []


def test_invalidate_during_conversion_restarts_the_job(harness_factory) -> None:
    h = harness_factory(delay_s=0.03, conversion_workers=1)
    svc = h.service

    async def scenario():
        await h.register("doc-1", pages=3)
        pending = asyncio.create_task(svc.ensure_pages("doc-1"))
        await _until_rendering(h)
        await svc.invalidate("doc-1")
        result = await pending
        return result, await h.metadata.find_page_records("doc-1"), await h.pages.list("doc-1/")

    result, records, blobs = asyncio.run(scenario())

    assert result.complete
    assert [r.page_number for r in records] == [1, 2, 3]
    assert [b.path for b in blobs] == ["doc-1/page-1", "doc-1/page-2", "doc-1/page-3"]
    assert len(h.convert_calls) >= 2


def test_recovered_listing_reports_missing_trailing_pages(harness) -> None:
    svc = harness.service

    async def scenario():
        await svc.register_document("doc-1", make_pdf(5))
        await svc.ensure_pages("doc-1")
        await harness.pages.delete(page_blob_path("doc-1", 5))
        harness.metadata.broken = True
        harness.metadata.stay_broken = True
        return await svc.ensure_pages("doc-1")

    result = asyncio.run(scenario())

    assert result.error is None
    assert result.total_pages == 5
    assert [p.page_number for p in result.pages] == [1, 2, 3, 4]
    assert [(f.page_number, f.kind) for f in result.failures] == [(5, ErrorKind.STORAGE_NOT_FOUND)]
    assert not result.complete


def test_recovered_listing_without_a_page_count_leaves_the_total_open(harness) -> None:
    svc = harness.service

    async def scenario():
        await svc.register_document("doc-1", make_pdf(4))
        await svc.ensure_pages("doc-1")
        await harness.pages.delete(page_blob_path("doc-1", 2))
        doc = await harness.metadata.get_document("doc-1")
        await harness.metadata.save_document(doc.model_copy(update={"total_pages": None}))
        harness.metadata.broken = True
        harness.metadata.stay_broken = True
        return await svc.ensure_pages("doc-1")

    result = asyncio.run(scenario())

    assert result.total_pages is None
    assert [p.page_number for p in result.pages] == [1, 3, 4]
    assert [f.page_number for f in result.failures] == [2]
    assert not result.complete


def test_ensure_batch_tracks_aggregate_progress(harness) -> None:
    svc = harness.service

    async def scenario():
        await harness.register("doc-a", pages=2)
        await harness.register("doc-b", pages=1)
        return await svc.ensure_batch(["doc-a", "doc-b", "missing", "doc-a"], max_concurrent=2)

    batch = asyncio.run(scenario())

    progress = batch.progress
    assert [r.document_id for r in batch.results] == ["doc-a", "doc-b", "missing"]
    assert (progress.total_documents, progress.completed, progress.failed, progress.processing) == (3, 2, 1, 0)
    assert progress.progress == 100
    assert progress.finished_at == harness.clock()
    assert batch.results[2].error.kind == ErrorKind.STORAGE_NOT_FOUND
    assert svc.batch_progress(progress.batch_id) == progress
    with pytest.raises(KeyError):
        svc.batch_progress("nope")


def test_register_rejects_unreadable_uploads(harness) -> None:
    with pytest.raises(ConversionError):
        asyncio.run(harness.service.register_document("doc-1", b"not a pdf"))


def test_open_session_and_navigate(harness) -> None:
    svc = harness.service

    async def scenario():
        await harness.register("doc-1", pages=6)
        handle = await svc.open_session("doc-1", Role.MEMBER, start_page=2)
        page5 = await svc.navigate(handle, 5)
        view = svc.session_view(handle)
        svc.close_session(handle)
        return page5, view

    page5, view = asyncio.run(scenario())

    assert page5.status == PageStatus.LOADED
    assert page5.url.page_number == 5
    assert view.total_pages == 6
    assert view.current_page == 5
    assert view.pages[1].status == PageStatus.LOADED


def test_open_session_on_unknown_document_raises(harness) -> None:
    with pytest.raises(StorageNotFoundError):
        asyncio.run(harness.service.open_session("missing", Role.MEMBER))


def test_closing_one_session_leaves_the_shared_job_running(harness_factory) -> None:
    h = harness_factory(delay_s=0.02)
    svc = h.service

    async def scenario():
        await h.register("doc-1", pages=4)
        a = await svc.open_session("doc-1", Role.MEMBER)
        b = await svc.open_session("doc-1", Role.MEMBER)
        await asyncio.sleep(0.05)  # let both preload windows finish
        await svc.invalidate("doc-1")

        nav_a = asyncio.create_task(svc.navigate(a, 4))
        nav_b = asyncio.create_task(svc.navigate(b, 4))
        for _ in range(100):
            job = svc.coordinator.registry.get("doc-1")
            if job is not None and job.waiters >= 2:
                break
            await asyncio.sleep(0)

        svc.close_session(a)
        page4 = await nav_b
        with pytest.raises(asyncio.CancelledError):
            await nav_a
        return page4

    page4 = asyncio.run(scenario())

    assert page4.status == PageStatus.LOADED
    assert h.convert_calls == ["doc-1", "doc-1"]


def test_start_and_stop(harness) -> None:
    svc = harness.service

    async def scenario():
        svc.start()
        await harness.register("doc-1", pages=1)
        handle = await svc.open_session("doc-1", Role.MEMBER)
        await svc.stop()
        return handle

    handle = asyncio.run(scenario())

    with pytest.raises(KeyError):
        svc.session_view(handle)
    assert svc.cache.stats.sweeps == 0
