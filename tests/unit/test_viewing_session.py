"""
ViewingSession 단위 테스트

검증 조건:
- 같은 id의 댓글이 여러 번 들어와도 표시 인스턴스는 하나
- tick 한 번에 이탈 해제 → 진입 배치가 일관되게 처리되고, 윈도우가 끝나면 레인 해제
- seek 후 활성 집합은 새 위치 기준 (윈도우 밖 해제, 윈도우 안 재배치, 경과 시간 = t - ts)
- 뒤로 가거나 임계값보다 크게 건너뛰면 남아 있는 인스턴스의 경과 시간도 새 위치에 맞춤
- 이미 만료된 댓글은 늦게 도착해도 레인을 받지 않음
- 숨김/삭제 이벤트는 표시 중인 댓글을 즉시 제거
- pause/resume이 모든 애니메이션 시계를 함께 멈추고 재개
- close()는 멱등적이며 레인 해제, 타이머 취소, 구독 해제를 모두 수행
- 백엔드 구독을 통해 생성/숨김 이벤트가 세션 화면에 반영
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.config.schema import AppConfig
from src.danmu import STATUS_HIDDEN, Actor, DanmuComment, NewDanmuComment, Video
from src.delivery.backend import InProcessRealtimeBackend
from src.metrics.metrics_store import MetricsStore
from src.session.viewing_session import ViewingSession
from src.store.comment_store import CommentStore
from src.store.document_store import InMemoryDocumentStore

_BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)
AUTHOR = Actor("user-1")


def _make_config(viewport_height: float = 720.0) -> AppConfig:
    cfg = AppConfig()
    cfg.layout.viewport_height = viewport_height
    cfg.layout.random_seed = 5
    return cfg


def _comment(
    comment_id: str,
    ts: float,
    motion: str = "scroll",
    order: int = 0,
    video_id: str = "v1",
    **overrides,
) -> DanmuComment:
    fields = dict(
        id=comment_id,
        video_id=video_id,
        author_id="user-1",
        text=comment_id,
        video_timestamp_sec=ts,
        motion_class=motion,
        color="#FFFFFF",
        size_class="medium",
        speed_multiplier=1.0,
        created_at=_BASE + timedelta(microseconds=order),
    )
    fields.update(overrides)
    return DanmuComment(**fields)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 50.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return _FakeClock()


@pytest.fixture
def session(clock):
    return ViewingSession("v1", _make_config(), clock=clock)


# =========================================================================
# 댓글 입력 및 중복 제거 테스트
# =========================================================================

class TestIngest:
    def test_duplicate_delivery_yields_single_instance(self, session):
        comment = _comment("a", 1.0)
        assert session.ingest(comment) is True
        assert session.ingest(comment) is False

        session.tick(2.0)
        assert session.ingest(comment) is False
        session.tick(2.1)

        assert session.visible_ids() == {"a"}
        assert len(session.allocator) == 1
        assert len(session.scheduler) == 1

    def test_other_video_ignored(self, session):
        assert session.ingest(_comment("x", 1.0, video_id="v2")) is False
        assert session.known_count() == 0

    def test_hidden_record_removes_displayed_comment(self, session):
        comment = _comment("a", 1.0)
        session.ingest(comment)
        session.tick(1.5)
        line = session.instance("a").line

        assert session.ingest(comment.with_status(STATUS_HIDDEN, "spam")) is False
        assert session.instance("a") is None
        assert session.allocator.is_free(line)
        assert "a" not in session.scheduler
        assert session.known_count() == 0

    def test_remove_frees_lane_immediately(self, session):
        session.ingest(_comment("a", 1.0, order=1))
        session.ingest(_comment("b", 1.0, order=2))
        session.tick(1.0)
        line_a = session.instance("a").line

        assert session.remove("a") is True
        assert session.allocator.is_free(line_a)
        assert session.remove("a") is False
        assert session.visible_ids() == {"b"}

    def test_remove_not_yet_displayed(self, session):
        session.ingest(_comment("future", 30.0))
        session.tick(1.0)
        assert session.remove("future") is False
        session.tick(30.0)
        assert session.visible_ids() == set()


# =========================================================================
# tick / seek 테스트
# =========================================================================

class TestTick:
    def test_simultaneous_comments_get_distinct_lines(self, session):
        for i in range(5):
            session.ingest(_comment(f"c{i}", 1.0, order=i))
        session.tick(1.0)
        lines = [instance.line for instance in session.active_instances()]
        assert lines == [7, 8, 9, 10, 11]

    def test_motion_classes_use_their_zones(self, session):
        session.ingest(_comment("t", 1.0, "top", order=1))
        session.ingest(_comment("s", 1.0, "scroll", order=2))
        session.ingest(_comment("b", 1.0, "bottom", order=3))
        session.tick(1.0)
        assert session.instance("t").line == 0
        assert session.instance("s").line == 7
        assert session.instance("b").line == 15

    def test_lane_released_when_window_ends(self, session):
        session.ingest(_comment("a", 0.0))
        session.tick(0.0)
        session.tick(7.9)
        assert session.visible_ids() == {"a"}

        update = session.tick(8.0)
        assert [comment.id for comment in update.exited] == ["a"]
        assert session.visible_ids() == set()
        assert len(session.allocator) == 0
        assert len(session.scheduler) == 0

    def test_released_lane_is_reused(self, session):
        session.ingest(_comment("old", 0.0, order=1))
        session.ingest(_comment("new", 8.0, order=2))
        session.tick(0.0)
        session.tick(8.0)
        assert session.instance("new").line == 7

    def test_expired_late_arrival_not_allocated(self, session):
        session.tick(20.0)
        session.ingest(_comment("old", 3.0))
        session.tick(20.1)
        assert session.visible_ids() == set()
        assert len(session.allocator) == 0

    def test_late_arrival_inside_window_starts_mid_animation(self, session):
        session.tick(5.0)
        session.ingest(_comment("late", 3.0))
        session.tick(5.0)
        assert session.scheduler.elapsed("late") == pytest.approx(2.0)
        assert session.instance("late").start_time_sec == 5.0

    def test_seek_recomputes_active_set(self, session):
        session.ingest(_comment("early", 2.0, order=1))
        session.ingest(_comment("late", 40.0, order=2))
        session.tick(3.0)
        assert session.visible_ids() == {"early"}

        update = session.seek(41.5)
        assert update.recomputed is True
        assert session.visible_ids() == {"late"}
        assert session.scheduler.elapsed("late") == pytest.approx(1.5)
        assert len(session.allocator) == 1

        session.seek(5.0)
        assert session.visible_ids() == {"early"}
        assert session.scheduler.elapsed("early") == pytest.approx(3.0)
        assert "late" not in session.scheduler
        assert len(session.allocator) == 1

    def test_backward_seek_resyncs_surviving_instance(self, session, clock):
        session.ingest(_comment("c", 5.0))
        session.tick(5.0)
        clock.now += 7.9
        session.tick(12.9)

        session.seek(6.0)
        assert session.scheduler.elapsed("c") == pytest.approx(1.0)

        clock.now += 0.2
        session.tick(6.2)
        assert session.visible_ids() == {"c"}
        frame = session.frame()
        assert [item["id"] for item in frame] == ["c"]
        assert frame[0]["opacity"] == 1.0

    def test_forward_jump_beyond_threshold_resyncs(self, session):
        session.ingest(_comment("c", 5.0))
        session.tick(5.0)
        session.tick(9.0)
        assert session.scheduler.elapsed("c") == pytest.approx(4.0)

    def test_small_forward_step_keeps_animation_clock(self, session, clock):
        session.ingest(_comment("c", 5.0))
        session.tick(5.0)
        clock.now += 1.0
        session.tick(5.3)
        assert session.scheduler.elapsed("c") == pytest.approx(1.0)

    def test_seek_back_restarts_finished_animation(self, session, clock):
        session.ingest(_comment("fast", 0.0, speed_multiplier=4.0))
        session.tick(0.0)
        clock.now += 2.5
        session.tick(0.1)
        assert session.frame() == []

        session.seek(0.5)
        assert session.scheduler.elapsed("fast") == pytest.approx(0.5)
        assert [item["id"] for item in session.frame()] == ["fast"]
        assert len(session.allocator) == 1

    def test_current_time_tracked(self, session):
        assert session.current_time is None
        session.tick(12.5)
        assert session.current_time == 12.5

    def test_degraded_allocation_recorded(self, clock):
        metrics = MetricsStore()
        # (46 - 16) // 30 = 1 줄
        session = ViewingSession("v1", _make_config(viewport_height=46), metrics_store=metrics, clock=clock)
        session.ingest(_comment("a", 1.0, order=1))
        session.ingest(_comment("b", 1.0, order=2))
        session.tick(1.0)

        assert session.instance("a").degraded is False
        assert session.instance("b").degraded is True
        counters = metrics.get_counters()
        assert counters.lane_allocations == 2
        assert counters.degraded_allocations == 1

    def test_set_viewport_resizes_lanes(self, session):
        assert session.set_viewport(1280.0, 316.0) == 10
        assert session.allocator.max_lines == 10


# =========================================================================
# 일시정지 및 프레임 테스트
# =========================================================================

class TestPlaybackState:
    def test_pause_and_resume_in_lockstep(self, session, clock):
        session.ingest(_comment("a", 0.0, "top", order=1))
        session.ingest(_comment("b", 0.0, "scroll", order=2))
        session.tick(0.0)

        clock.now += 2.0
        session.pause()
        assert session.is_paused is True
        clock.now += 30.0
        assert session.scheduler.elapsed("a") == pytest.approx(2.0)
        assert session.scheduler.elapsed("b") == pytest.approx(2.0)

        session.resume()
        clock.now += 1.0
        assert session.is_paused is False
        assert session.scheduler.elapsed("a") == pytest.approx(3.0)
        assert session.scheduler.elapsed("b") == pytest.approx(3.0)

    def test_frame_fields(self, session):
        session.ingest(_comment("hi", 0.0, "top", size_class="large", color="#FF0000"))
        session.tick(0.4)
        frame = session.frame()

        assert len(frame) == 1
        item = frame[0]
        spec = session.instance("hi").animation
        assert item["id"] == "hi"
        assert item["text"] == "hi"
        assert item["line"] == 0
        assert item["y"] == pytest.approx(8.0)
        assert item["opacity"] == pytest.approx(0.5)
        assert item["fontSize"] == 18
        assert item["color"] == (255, 0, 0)
        assert item["x"] == pytest.approx((1280.0 - spec.text_width) / 2)

    def test_scroll_frame_moves_left(self, session, clock):
        session.ingest(_comment("s", 0.0))
        session.tick(0.0)
        start_x = session.frame()[0]["x"]
        clock.now += 4.0
        assert session.frame()[0]["x"] < start_x

    def test_frame_skips_finished_animation(self, session, clock):
        session.ingest(_comment("fast", 0.0, speed_multiplier=4.0))
        session.tick(0.0)
        clock.now += 2.5
        session.tick(0.1)
        # scroll 애니메이션은 끝났지만 레인은 윈도우 끝까지 유지
        assert session.frame() == []
        assert session.visible_ids() == {"fast"}
        assert len(session.allocator) == 1


# =========================================================================
# 종료 테스트
# =========================================================================

class TestClose:
    @pytest.mark.asyncio
    async def test_close_releases_everything(self, session):
        for i in range(4):
            session.ingest(_comment(f"c{i}", 1.0, order=i))
        session.tick(1.0)

        await session.close()
        assert session.is_closed is True
        assert session.visible_ids() == set()
        assert len(session.allocator) == 0
        assert len(session.scheduler) == 0
        assert session.known_count() == 0

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, session):
        await session.close()
        await session.close()
        assert session.is_closed is True

    @pytest.mark.asyncio
    async def test_closed_session_rejects_work(self, session):
        await session.close()
        assert session.ingest(_comment("a", 1.0)) is False
        with pytest.raises(RuntimeError):
            session.tick(1.0)


# =========================================================================
# 실시간 백엔드 연동 테스트
# =========================================================================

class _Env:
    def __init__(self) -> None:
        self.config = _make_config()
        self.metrics = MetricsStore()
        self.store = CommentStore(InMemoryDocumentStore(), self.config, metrics_store=self.metrics)
        self.store.register_video(Video("v1", duration_sec=600.0))
        self.backend = InProcessRealtimeBackend(self.store, self.config, metrics_store=self.metrics)

    def post(self, text: str, ts: float) -> DanmuComment:
        return self.store.create(NewDanmuComment("v1", text, ts), AUTHOR)

    def session(self) -> ViewingSession:
        return ViewingSession("v1", self.config, backend=self.backend, metrics_store=self.metrics)


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("조건 대기 시간 초과")
        await asyncio.sleep(0.005)


class TestWithBackend:
    @pytest.mark.asyncio
    async def test_start_requires_backend(self, session):
        with pytest.raises(RuntimeError):
            await session.start()

    @pytest.mark.asyncio
    async def test_run_requires_start(self):
        env = _Env()
        with pytest.raises(RuntimeError):
            await env.session().run()

    @pytest.mark.asyncio
    async def test_snapshot_then_live_events(self):
        env = _Env()
        first = env.post("first", 1.0)
        session = env.session()

        assert await session.start() == 1
        session.tick(2.0)
        assert session.visible_ids() == {first.id}
        assert session.scheduler.pending_timers() == 1

        runner = asyncio.create_task(session.run())
        second = env.post("second", 1.5)
        await _wait_until(lambda: second.id in session.visible_ids())
        assert session.instance(second.id).line == session.instance(first.id).line + 1

        env.store.hide(first.id, AUTHOR)
        await _wait_until(lambda: first.id not in session.visible_ids())

        await session.close()
        await asyncio.wait_for(runner, timeout=2.0)
        assert env.backend.stream_count("v1") == 0
        assert session.scheduler.pending_timers() == 0
        assert env.metrics.get_counters().active_subscriptions == 0

    @pytest.mark.asyncio
    async def test_future_comment_waits_for_playback(self):
        env = _Env()
        session = env.session()
        await session.start()
        session.tick(1.0)

        runner = asyncio.create_task(session.run())
        future = env.post("future", 20.0)
        await _wait_until(lambda: session.known_count() == 1)
        assert session.visible_ids() == set()

        session.tick(20.0)
        assert session.visible_ids() == {future.id}

        await session.close()
        await asyncio.wait_for(runner, timeout=2.0)

    @pytest.mark.asyncio
    async def test_posted_comment_shows_for_its_window(self):
        env = _Env()
        created = env.store.create(
            NewDanmuComment("v1", "hi", 10.0, motion_class="scroll", speed_multiplier=1.0),
            AUTHOR,
        )
        session = env.session()
        assert await session.start() == 1

        session.tick(9.9)
        assert created.id not in session.visible_ids()

        session.tick(10.0)
        assert session.visible_ids() == {created.id}
        instance = session.instance(created.id)
        assert instance.comment.text == "hi"
        assert instance.display_duration_sec == 8.0
        assert [item["id"] for item in session.frame()] == [created.id]

        session.tick(18.0)
        assert created.id not in session.visible_ids()
        assert len(session.allocator) == 0

        await session.close()

    @pytest.mark.asyncio
    async def test_comment_posted_during_playback_shows_for_its_window(self):
        env = _Env()
        session = env.session()
        await session.start()
        session.tick(9.9)
        runner = asyncio.create_task(session.run())

        created = env.post("hi", 10.0)
        await _wait_until(lambda: session.known_count() == 1)
        assert created.id not in session.visible_ids()

        session.tick(10.0)
        assert session.instance(created.id).display_duration_sec == 8.0
        session.tick(18.0)
        assert session.visible_ids() == set()

        await session.close()
        await asyncio.wait_for(runner, timeout=2.0)

    @pytest.mark.asyncio
    async def test_no_timer_fires_after_close(self):
        env = _Env()
        env.post("quick", 0.0)
        session = env.session()
        await session.start()
        session.tick(0.0)
        assert session.scheduler.pending_timers() == 1

        await session.close()
        assert session.scheduler.pending_timers() == 0
        assert len(session.scheduler) == 0
