from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Coroutine
from typing import Any

import redis

from contestant.commands import CommandDispatcher
from contestant.config import Settings
from contestant.infra.broker import Broker, RedisBroker
from contestant.infra.fusion import FusionClient
from contestant.infra.pool import PoolClient
from contestant.infra.question_bank import QuestionBankClient
from contestant.leader import LeaderElector
from contestant.lease import LeaseStore
from contestant.notices import NoticeBoard
from contestant.presence import PresenceAnnouncer, make_last_will
from contestant.quiz.runtime import QuizRuntime
from contestant.score_sync import ScoreSync
from contestant.session_store import SessionStore, User
from contestant.stage_workflow import StageWorkflow
from contestant.transport import ConnectionConfig, ConnectionStatus, PresenceTransport, TransportError, Unsubscribe

logger = logging.getLogger(__name__)


class ContestantClient:
    """Wires one contestant station together.

    Only the tab holding the leader lease talks to the broker. The connection config
    exists only while this tab leads, the broker is enabled and a contestant is logged
    in; `sync_connection()` connects or tears down to match.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        r: redis.Redis,
        tab_id: str | None = None,
        broker_factory: Callable[[], Broker] | None = None,
        fusion: FusionClient | None = None,
        pool: PoolClient | None = None,
        question_bank: QuestionBankClient | None = None,
    ) -> None:
        self.settings = settings
        self.r = r
        self.notices = NoticeBoard()
        self.session = SessionStore(r=r)
        self.elector = LeaderElector(store=LeaseStore(r=r), tab_id=tab_id)

        self.fusion = fusion or FusionClient(settings=settings.fusion)
        self.pool = pool or PoolClient(base_url=settings.pool_base_url)
        self.question_bank = question_bank or QuestionBankClient(url=settings.questions_url)
        self.workflow = StageWorkflow(fusion=self.fusion, pool=self.pool, question_bank=self.question_bank)
        self.score_sync = ScoreSync(fusion=self.fusion, store=self.workflow.store, session=self.session)
        self.runtime = QuizRuntime(
            session=self.session,
            notices=self.notices,
            pool=self.pool,
            feed=self.workflow,
            on_submitted=self.score_sync,
        )

        self.transport = PresenceTransport(broker_factory=broker_factory or self._redis_broker)
        self.dispatcher = CommandDispatcher(
            workflow=self.workflow,
            runtime=self.runtime,
            session=self.session,
            notices=self.notices,
            on_refresh=self.sync_connection,
        )
        self.presence: PresenceAnnouncer | None = None
        self._unsubscribes: list[Unsubscribe] = []
        self._sync_lock = asyncio.Lock()
        self._was_connected = False
        self._background: set[asyncio.Task[Any]] = set()

        self.elector.add_listener(self._on_leadership)
        self.transport.on_status_change(self._on_status)

    def _redis_broker(self) -> Broker:
        broker = self.settings.broker
        return RedisBroker(url=broker.url, username=broker.username, password=broker.password)

    # ---- background scheduling ----

    def _spawn(self, factory: Callable[[], Coroutine[Any, Any, Any]], *, name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; skipping %s", name)
            return
        task = loop.create_task(factory(), name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    def _on_leadership(self, is_leader: bool) -> None:
        self._spawn(self.sync_connection, name=f"sync-connection:{is_leader}")

    def _on_status(self, status: ConnectionStatus) -> None:
        if status == ConnectionStatus.connected:
            if self._was_connected and self.presence is not None and not self.presence.announced_online:
                # Reconnected: announce again and restart the heartbeat.
                self._spawn(self.presence.start, name="presence-restart")
            self._was_connected = True
        elif status == ConnectionStatus.disconnected and self._was_connected:
            self._was_connected = False
            if self.connection_config() is not None:
                self.notices.warning("实时指令连接已断开")

    # ---- connection ----

    @property
    def state_topic(self) -> str | None:
        user_id = self.session.user_id
        return self.settings.topics.state_for_client(user_id) if user_id else None

    def connection_config(self) -> ConnectionConfig | None:
        if not self.settings.broker.enabled or not self.elector.is_leader:
            return None
        if not self.session.is_authenticated:
            return None
        user_id = self.session.user_id
        state_topic = self.state_topic
        if not user_id or not state_topic:
            return None
        return ConnectionConfig(client_id=user_id, will=make_last_will(state_topic=state_topic))

    async def sync_connection(self) -> None:
        async with self._sync_lock:
            config = self.connection_config()
            if config is None:
                if self.transport.status != ConnectionStatus.disconnected or self.presence is not None:
                    await self._teardown()
                return
            if self.transport.is_connected():
                return
            try:
                await self.transport.connect(config)
            except TransportError as e:
                logger.warning("Broker unavailable, continuing without real-time commands: %s", e)
                self.notices.warning("实时指令连接失败")
                return
            if self.presence is not None and self.transport.subscriber_count(self.settings.topics.command):
                # An automatic reconnect finished while we waited and kept the subscriptions.
                return
            self._drop_stale_connection()
            await self._on_connected(config)

    async def _on_connected(self, config: ConnectionConfig) -> None:
        topics = self.settings.topics
        dispatcher = self.dispatcher
        for topic, handler in (
            (topics.command, dispatcher.handle_message),
            (topics.control, dispatcher.handle_control),
            (topics.result, dispatcher.handle_result),
        ):
            self._unsubscribes.append(await self.transport.subscribe(topic, handler))

        assert config.will is not None
        self.presence = PresenceAnnouncer(transport=self.transport, state_topic=config.will.topic)
        await self.presence.start()

        if not self.workflow.store.events:
            try:
                await self.workflow.load_events()
            except Exception as e:
                logger.error("Failed to load events: %s", e)
                self.notices.error("赛事列表获取失败")

    def _drop_stale_connection(self) -> None:
        # Left over from a connection whose reconnect gave up; its subscriptions are gone.
        presence, self.presence = self.presence, None
        if presence is not None:
            presence.close()
        self._unsubscribes.clear()

    async def _teardown(self) -> None:
        presence, self.presence = self.presence, None
        if presence is not None:
            await presence.stop()
            presence.close()
        unsubscribes, self._unsubscribes = self._unsubscribes, []
        for unsubscribe in unsubscribes:
            await unsubscribe()
        self._was_connected = False
        await self.transport.disconnect()

    # ---- session ----

    async def login(self, user: User) -> User:
        self.session.set_user(user)
        logger.info("Contestant %s logged in", user.id)
        await self.sync_connection()
        return user

    async def logout(self) -> None:
        self.session.logout()
        await self.sync_connection()

    # ---- contestant actions ----

    async def buzz(self) -> bool:
        if not self.runtime.trigger_buzzer():
            return False
        user_id = self.session.user_id
        if self.transport.is_connected() and user_id:
            payload = json.dumps({"player_id": user_id})
            await self.transport.publish(self.settings.topics.buzz, payload)
        return True

    async def read_presence(self, client_id: str) -> str | None:
        if not self.transport.is_connected():
            return None
        return await self.transport.read_retained(self.settings.topics.state_for_client(client_id))

    # ---- lifecycle ----

    async def start(self) -> None:
        await self.elector.start()
        await self.sync_connection()

    async def stop(self) -> None:
        await self._teardown()
        self.runtime.close()
        await self.elector.stop()
        for task in list(self._background):
            task.cancel()
        await self.fusion.aclose()
        await self.pool.aclose()
        await self.question_bank.aclose()
