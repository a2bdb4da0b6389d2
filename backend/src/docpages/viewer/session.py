from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from pydantic import BaseModel

from docpages.access.models import PageUrl, Role
from docpages.recovery.classifier import classify
from docpages.recovery.engine import RecoveryEngine
from docpages.recovery.models import ErrorContext, PageError, RecoveryResult

log = logging.getLogger(__name__)


class PageStatus(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"
    RECOVERING = "recovering"


_TRANSITIONS: dict[PageStatus, frozenset[PageStatus]] = {
    PageStatus.UNLOADED: frozenset({PageStatus.LOADING}),
    PageStatus.LOADING: frozenset({PageStatus.LOADED, PageStatus.FAILED}),
    PageStatus.FAILED: frozenset({PageStatus.RECOVERING, PageStatus.LOADING}),
    PageStatus.RECOVERING: frozenset({PageStatus.LOADING, PageStatus.LOADED, PageStatus.FAILED}),
    PageStatus.LOADED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    pass


# (document_id, page_number, role, user_id, viewing_context) -> signed page URL
PageLoader = Callable[[str, int, Role, "str | None", str], Awaitable[PageUrl]]


@dataclass
class ViewingSession:
    session_id: str
    document_id: str
    total_pages: int
    role: Role
    user_id: str | None
    viewing_context: str
    preload_window: int
    current_page: int = 1
    statuses: dict[int, PageStatus] = field(default_factory=dict)
    urls: dict[int, PageUrl] = field(default_factory=dict)
    errors: dict[int, PageError] = field(default_factory=dict)
    retries: dict[int, int] = field(default_factory=dict)
    inflight: dict[int, asyncio.Task] = field(default_factory=dict)
    preloader: asyncio.Task | None = None
    closed: bool = False

    def window(self) -> list[int]:
        """Neighbours of the current page in preload order: ahead first, nearest first."""
        ahead = [self.current_page + d for d in range(1, self.preload_window + 1)]
        behind = [self.current_page - d for d in range(1, self.preload_window + 1)]
        return [n for n in ahead + behind if 1 <= n <= self.total_pages]


class PageView(BaseModel):
    page_number: int
    status: PageStatus
    url: PageUrl | None = None
    error: PageError | None = None


class SessionView(BaseModel):
    session_id: str
    document_id: str
    total_pages: int
    current_page: int
    pages: list[PageView]


class MultiPageCoordinator:
    """
    Tracks per-page load state for every open viewing session.

    The requested page is loaded in the foreground; its neighbours are loaded
    by one background task per session, which is replaced whenever the viewer
    navigates and cancelled when the session closes.
    """

    def __init__(
        self,
        loader: PageLoader,
        engine: RecoveryEngine,
        *,
        preload_window: int = 2,
        max_page_retries: int = 3,
    ) -> None:
        self._loader = loader
        self._engine = engine
        self._preload_window = preload_window
        self._max_page_retries = max_page_retries
        self._sessions: dict[str, ViewingSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def open_session(
        self,
        document_id: str,
        total_pages: int,
        role: Role,
        *,
        user_id: str | None = None,
        start_page: int = 1,
        viewing_context: str = "viewer",
    ) -> str:
        if total_pages < 1:
            raise ValueError(f"document {document_id} has no pages")
        if not 1 <= start_page <= total_pages:
            raise ValueError(f"start page {start_page} outside 1..{total_pages}")

        session = ViewingSession(
            session_id=uuid.uuid4().hex,
            document_id=document_id,
            total_pages=total_pages,
            role=role,
            user_id=user_id,
            viewing_context=viewing_context,
            preload_window=self._preload_window,
            current_page=start_page,
            statuses={n: PageStatus.UNLOADED for n in range(1, total_pages + 1)},
            retries={n: 0 for n in range(1, total_pages + 1)},
        )
        self._sessions[session.session_id] = session
        log.info("session %s: opened %s (%s pages) at page %s", session.session_id, document_id, total_pages, start_page)

        await self._show(session, start_page)
        return session.session_id

    async def navigate(self, handle: str, page_number: int) -> PageView:
        session = self._get(handle)
        if not 1 <= page_number <= session.total_pages:
            raise ValueError(f"page {page_number} outside 1..{session.total_pages}")

        if session.statuses[page_number] == PageStatus.FAILED and page_number not in session.inflight:
            # explicit navigation is a manual retry
            session.retries[page_number] = 0
            session.errors.pop(page_number, None)
        await self._show(session, page_number)
        return self.page_view(session, page_number)

    def close_session(self, handle: str) -> None:
        session = self._sessions.pop(handle, None)
        if session is None:
            return
        session.closed = True
        if session.preloader is not None:
            session.preloader.cancel()
        for task in list(session.inflight.values()):
            task.cancel()
        session.inflight.clear()
        log.info("session %s: closed", handle)

    def close_all(self) -> None:
        for handle in list(self._sessions):
            self.close_session(handle)

    def view(self, handle: str) -> SessionView:
        session = self._get(handle)
        return SessionView(
            session_id=session.session_id,
            document_id=session.document_id,
            total_pages=session.total_pages,
            current_page=session.current_page,
            pages=[self.page_view(session, n) for n in range(1, session.total_pages + 1)],
        )

    def page_view(self, session: ViewingSession, page_number: int) -> PageView:
        return PageView(
            page_number=page_number,
            status=session.statuses[page_number],
            url=session.urls.get(page_number),
            error=session.errors.get(page_number),
        )

    def _get(self, handle: str) -> ViewingSession:
        try:
            return self._sessions[handle]
        except KeyError:
            raise KeyError(f"unknown or closed session {handle}") from None

    async def _show(self, session: ViewingSession, page_number: int) -> None:
        session.current_page = page_number
        task = self._start_load(session, page_number)
        self._recenter(session)
        if task is not None:
            await asyncio.shield(task)

    def _recenter(self, session: ViewingSession) -> None:
        if session.preloader is not None and not session.preloader.done():
            session.preloader.cancel()
        pending = [n for n in session.window() if session.statuses[n] == PageStatus.UNLOADED]
        session.preloader = asyncio.create_task(self._preload(session, pending)) if pending else None

    async def _preload(self, session: ViewingSession, pages: list[int]) -> None:
        for n in pages:
            if session.closed:
                return
            if session.statuses[n] != PageStatus.UNLOADED:
                continue
            task = self._start_load(session, n)
            if task is not None:
                await asyncio.shield(task)

    def _start_load(self, session: ViewingSession, page_number: int) -> asyncio.Task | None:
        if session.statuses[page_number] == PageStatus.LOADED:
            return None
        task = session.inflight.get(page_number)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self._load(session, page_number))
        session.inflight[page_number] = task

        def _done(t: asyncio.Task, n: int = page_number) -> None:
            if session.inflight.get(n) is t:
                del session.inflight[n]

        task.add_done_callback(_done)
        return task

    def _transition(self, session: ViewingSession, page_number: int, new: PageStatus) -> None:
        old = session.statuses[page_number]
        if new not in _TRANSITIONS[old]:
            raise InvalidTransitionError(f"page {page_number}: {old.value} -> {new.value}")
        session.statuses[page_number] = new

    def _loaded(self, session: ViewingSession, page_number: int, url: PageUrl) -> None:
        self._transition(session, page_number, PageStatus.LOADED)
        session.urls[page_number] = url
        session.errors.pop(page_number, None)

    async def _fetch(self, session: ViewingSession, page_number: int) -> PageUrl:
        return await self._loader(
            session.document_id,
            page_number,
            session.role,
            session.user_id,
            session.viewing_context,
        )

    async def _load(self, session: ViewingSession, page_number: int) -> None:
        self._transition(session, page_number, PageStatus.LOADING)
        try:
            url = await self._fetch(session, page_number)
        except Exception as exc:
            self._transition(session, page_number, PageStatus.FAILED)
            log.warning("session %s: page %s failed to load: %r", session.session_id, page_number, exc)
            await self._recover(session, page_number, exc)
            return
        self._loaded(session, page_number, url)

    async def _recover(self, session: ViewingSession, page_number: int, fault: Exception) -> None:
        while True:
            kind = classify(fault)
            ctx = ErrorContext(
                document_id=session.document_id,
                fault=fault,
                page_number=page_number,
                caller_role=session.role,
                viewing_context=session.viewing_context,
            )
            if session.retries[page_number] >= self._max_page_retries or not self._engine.is_recoverable(kind):
                exhausted = RecoveryResult(success=False, kind=kind, attempts=session.retries[page_number])
                session.errors[page_number] = self._engine.page_error(exhausted, ctx)
                log.error("session %s: page %s is terminally failed (kind=%s)", session.session_id, page_number, kind.value)
                return

            session.retries[page_number] += 1
            self._transition(session, page_number, PageStatus.RECOVERING)
            result = await self._engine.handle(kind, ctx)

            if not result.success:
                self._transition(session, page_number, PageStatus.FAILED)
                session.errors[page_number] = self._engine.page_error(result, ctx)
                return
            if result.url is not None:
                self._loaded(session, page_number, result.url)
                return

            self._transition(session, page_number, PageStatus.LOADING)
            try:
                url = await self._fetch(session, page_number)
            except Exception as exc:
                self._transition(session, page_number, PageStatus.FAILED)
                log.warning("session %s: page %s failed again after recovery: %r", session.session_id, page_number, exc)
                fault = exc
                continue
            self._loaded(session, page_number, url)
            return
