from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Set
import asyncio
import collections
import contextlib
import functools

import attr
import bitstring
import logwood

import wyvern.config
import wyvern.message
import wyvern.piece
import wyvern.protocol
import wyvern.scheduler


@attr.s(slots=True, auto_attribs=True)
class PeerRuntimeState:
    """
    Per connection bookkeeping, lives exactly as long as the connection is part
    of the pool.
    """

    bitfield: bitstring.BitArray
    choked_by_peer: bool = True
    # we never upload, so the peer stays choked by us for the whole session
    choking_peer: bool = True
    outstanding: set = attr.ib(factory=set)
    bytes_received_window: int = 0
    # whether we had requests in flight during the current window
    requested_in_window: bool = False
    blocks_delivered: int = 0
    admitted_at: float = 0.0
    choked_since: Optional[float] = 0.0


# returned by `PeerSession._next_event` when the scheduler woke the session up
_WOKEN = object()


class PeerSession:
    """
    Drives one `PeerConnection`: handshake, interest, consuming the peer's
    events and keeping the request pipeline full while we are unchoked.

    The session waits either for the next message or for the scheduler to
    announce claimable blocks, whichever comes first.

    Connection failures end the session, they are logged and stored in
    `self.error`. `DiskWriteFailure` is not handled here and ends the task.
    """

    def __init__(
        self,
        address: wyvern.protocol.PeerAddress,
        connection: wyvern.protocol.PeerConnection,
        piece_store: wyvern.piece.PieceStore,
        scheduler: wyvern.scheduler.BlockScheduler,
        availability: wyvern.scheduler.PieceAvailability,
        on_piece_completed: Optional[Callable[[int], None]] = None,
    ):
        self.address = address
        self.connection = connection
        self._piece_store = piece_store
        self._scheduler = scheduler
        self._availability = availability
        self._on_piece_completed = on_piece_completed
        self._number_of_pieces = piece_store.number_of_pieces
        self.state = PeerRuntimeState(
            bitfield=bitstring.BitArray(bin='0' * self._number_of_pieces)
        )
        self.error: Optional[Exception] = None
        self._messages_seen = 0
        self._bytes_seen = 0
        self._availability_counted = False
        self._stopped = False
        self._wakeup = asyncio.Event()
        self._pending_event: Optional[asyncio.Future] = None
        self._logger = logwood.get_logger(self.__class__.__name__)

    def __str__(self):
        return f'PeerSession<{self.address}>'

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """
        Ask the session to end. It stops requesting and delivering blocks right
        away and closes the connection on its way out.
        """
        self._stopped = True
        self._wakeup.set()

    async def run(self) -> None:
        self._scheduler.watch(self._wakeup)
        try:
            await self.connection.open()
            self._logger.info('Connected to %s', self.address)
            await self.connection.send_interested()
            events = self.connection.events()
            while not self._stopped:
                message = await self._next_event(events)
                if message is None or self._stopped:
                    break
                if message is not _WOKEN:
                    self._count_received_bytes()
                    await self._handle(message)
                if self._stopped:
                    break
                if self._piece_store.is_complete():
                    await self._cancel_outstanding()
                    break
                await self._fill_pipeline()
        except wyvern.protocol.PeerConnectionError as exc:
            self.error = exc
            self._logger.info(
                'Dropping %s: %s - %s', self.address, exc.__class__.__name__, exc
            )
        finally:
            self._scheduler.unwatch(self._wakeup)
            self._drop_pending_event()
            self.release_claims()
            self._forget_availability()
            await self.connection.close()

    async def _next_event(self, events: AsyncIterator[wyvern.message.BaseMessage]):
        """
        Next message from the peer, `_WOKEN` if the scheduler had news first or
        None once the peer closed the connection.
        """
        if self._pending_event is None:
            self._pending_event = asyncio.ensure_future(_read_next(events))
        woken = asyncio.ensure_future(self._wakeup.wait())
        try:
            await asyncio.wait(
                {self._pending_event, woken}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            woken.cancel()
        self._wakeup.clear()
        if not self._pending_event.done():
            return _WOKEN
        pending, self._pending_event = self._pending_event, None
        return pending.result()

    def _drop_pending_event(self) -> None:
        pending, self._pending_event = self._pending_event, None
        if pending is None:
            return
        if not pending.done():
            pending.cancel()
        elif not pending.cancelled():
            # retrieve it, the session is over either way
            pending.exception()

    def release_claims(self) -> List[wyvern.piece.Block]:
        """
        Hands every block this peer has outstanding back to the piece store and
        wakes the other sessions up to claim them. Safe to call any number of
        times.
        """
        released = self._piece_store.release_peer(self.address)
        self.state.outstanding.clear()
        if released:
            self._scheduler.wake_all()
        return released

    def _count_received_bytes(self) -> None:
        received = self.connection.bytes_received
        self.state.bytes_received_window += received - self._bytes_seen
        self._bytes_seen = received

    async def _handle(self, message: wyvern.message.BaseMessage) -> None:
        if isinstance(message, wyvern.message.KeepAlive):
            return

        if isinstance(message, wyvern.message.BitField):
            self._on_bitfield(message)
        elif isinstance(message, wyvern.message.Have):
            self._on_have(message)
        elif isinstance(message, wyvern.message.Choke):
            self._on_choke()
        elif isinstance(message, wyvern.message.Unchoke):
            self.state.choked_by_peer = False
            self.state.choked_since = None
        elif isinstance(message, wyvern.message.Piece):
            self._on_piece(message)
        elif isinstance(message, wyvern.message.Unknown):
            self._logger.debug(
                'Ignoring unknown message id = %s from %s', message.message_id, self.address
            )
        else:
            # interested, not interested, request and cancel only matter to seeders
            self._logger.debug('Ignoring %s from %s', message, self.address)
        self._messages_seen += 1

    def _on_bitfield(self, message: wyvern.message.BitField) -> None:
        if self._messages_seen:
            raise wyvern.protocol.ProtocolViolation(
                f'{self.address} sent bitfield after other messages'
            )
        expected_bytes = (self._number_of_pieces + 7) // 8
        if len(message.raw) != expected_bytes:
            raise wyvern.protocol.ProtocolViolation(
                f'{self.address} sent bitfield of {len(message.raw)} bytes, '
                f'expected {expected_bytes}'
            )
        if message.bitfield[self._number_of_pieces :].any(True):
            raise wyvern.protocol.ProtocolViolation(
                f'{self.address} sent bitfield with spare bits set'
            )
        self._forget_availability()
        self.state.bitfield = message.bitfield[: self._number_of_pieces]
        self._availability.add_bitfield(self.state.bitfield)
        self._availability_counted = True

    def _on_have(self, message: wyvern.message.Have) -> None:
        if message.index >= self._number_of_pieces:
            raise wyvern.protocol.ProtocolViolation(
                f'{self.address} announced piece {message.index} out of range'
            )
        if self.state.bitfield[message.index]:
            return
        self.state.bitfield.set(True, message.index)
        self._availability.add_have(message.index)
        self._availability_counted = True

    def _on_choke(self) -> None:
        if not self.state.choked_by_peer:
            self.state.choked_since = asyncio.get_running_loop().time()
        self.state.choked_by_peer = True
        # choking peers discard our pending requests
        released = self.release_claims()
        if released:
            self._logger.debug(
                '%s choked us, released %d requested blocks', self.address, len(released)
            )

    def _on_piece(self, message: wyvern.message.Piece) -> None:
        block = wyvern.piece.Block(
            piece_index=message.index, offset=message.begin, length=len(message.block)
        )
        if block not in self.state.outstanding:
            self._logger.debug('%s sent unrequested block %s', self.address, block)
        self.state.outstanding.discard(block)

        try:
            delivery = self._piece_store.deliver_block(block, message.block, self.address)
        except wyvern.piece.InvalidBlock as exc:
            raise wyvern.protocol.ProtocolViolation(str(exc)) from exc

        if delivery is wyvern.piece.Delivery.DUPLICATE:
            self._logger.debug('%s sent duplicate block %s', self.address, block)
            return
        self.state.blocks_delivered += 1
        if delivery is wyvern.piece.Delivery.COMPLETED and self._on_piece_completed:
            self._on_piece_completed(block.piece_index)

    async def _fill_pipeline(self) -> None:
        if self._stopped:
            return
        await self._cancel_stale_requests()
        if self.state.choked_by_peer:
            return
        while self._scheduler.slots(len(self.state.outstanding)) and not self._stopped:
            block = self._scheduler.next_block(self.address, self.state.bitfield)
            if block is None:
                return
            self.state.outstanding.add(block)
            self.state.requested_in_window = True
            await self.connection.request(block)

    async def _cancel_stale_requests(self) -> None:
        """
        Requests whose block was delivered by another peer, or whose piece got
        finished meanwhile, are not ours in the piece store anymore. Cancel them
        to free the pipeline slots.
        """
        stale = self.state.outstanding - self._piece_store.outstanding(self.address)
        for block in stale:
            self.state.outstanding.discard(block)
            await self.connection.cancel(block)
        if stale:
            self._logger.debug('Cancelled %d stale requests to %s', len(stale), self.address)

    async def _cancel_outstanding(self) -> None:
        for block in list(self.state.outstanding):
            await self.connection.cancel(block)

    def _forget_availability(self) -> None:
        if self._availability_counted:
            self._availability.remove_bitfield(self.state.bitfield)
            self._availability_counted = False


async def _read_next(events: AsyncIterator[wyvern.message.BaseMessage]):
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return None


class PeerPool:
    """
    Keeps at most `active_peers` sessions running, drawn from a queue of
    candidate addresses. Every `peer_update_interval` seconds unproductive
    sessions are evicted and replaced by fresh candidates.
    """

    # sessions whose data failed verification this many times get evicted
    MAX_STRIKES = 3
    # how many rotation intervals a peer may keep us choked
    CHOKE_GRACE_INTERVALS = 2

    def __init__(
        self,
        config: wyvern.config.ClientConfig,
        session_factory: Callable[[wyvern.protocol.PeerAddress], PeerSession],
        on_fatal: Optional[Callable[[BaseException], None]] = None,
    ):
        self._config = config
        self._session_factory = session_factory
        self._on_fatal = on_fatal
        self._candidates: collections.deque = collections.deque()
        self._known: set = set()
        self._sessions: Dict[wyvern.protocol.PeerAddress, PeerSession] = {}
        self._tasks: Dict[wyvern.protocol.PeerAddress, asyncio.Task] = {}
        # evicted sessions that have not finished yet, they still hold a connection
        self._retired: Set[asyncio.Task] = set()
        self._strikes: collections.Counter = collections.Counter()
        self._accepting = False
        self._exhaustion_reported = False
        self._rotation_task: Optional[asyncio.Task] = None
        self._logger = logwood.get_logger(self.__class__.__name__)

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    @property
    def candidate_count(self) -> int:
        return len(self._candidates)

    @property
    def sessions(self) -> List[PeerSession]:
        return list(self._sessions.values())

    @property
    def exhausted(self) -> bool:
        return not self._candidates and len(self._tasks) < self._config.active_peers

    def add_candidates(self, addresses: Iterable[wyvern.protocol.PeerAddress]) -> int:
        """
        Queue addresses that have not been seen before. Returns how many were added.
        """
        added = 0
        for address in addresses:
            if address in self._known:
                continue
            self._known.add(address)
            self._candidates.append(address)
            added += 1
        if added:
            self._exhaustion_reported = False
            self._logger.debug('Added %d candidate peers', added)
            self._fill_vacancies()
        return added

    def start(self) -> None:
        self._accepting = True
        self._fill_vacancies()
        self._rotation_task = asyncio.create_task(self._rotation_loop())

    async def stop(self, drain_timeout: float = 0) -> None:
        """
        Stops admitting candidates, gives running sessions `drain_timeout` seconds
        to finish on their own and evicts the rest.
        """
        self._accepting = False
        if self._rotation_task is not None:
            self._rotation_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._rotation_task
            self._rotation_task = None

        tasks = list(self._tasks.values())
        if tasks and drain_timeout > 0:
            await asyncio.wait(tasks, timeout=drain_timeout)
        for address in list(self._sessions):
            self._evict(address, 'shutting down')
        await asyncio.gather(*self._retired, return_exceptions=True)

    def evaluate(self) -> None:
        """
        One rotation pass: evict dead and unproductive sessions, then fill the
        vacancies from the candidate queue.
        """
        now = asyncio.get_running_loop().time()
        interval = self._config.peer_update_interval
        for address, session in list(self._sessions.items()):
            reason = self._eviction_reason(session, self._tasks[address], now, interval)
            if reason is not None:
                self._evict(address, reason)
            elif session.state.admitted_at <= now - interval:
                # start a new window for sessions that have been judged
                session.state.bytes_received_window = 0
                session.state.requested_in_window = bool(session.state.outstanding)
        self._fill_vacancies()

    def record_integrity_failure(
        self, addresses: Iterable[wyvern.protocol.PeerAddress]
    ) -> List[wyvern.protocol.PeerAddress]:
        """
        Gives every address a strike. Returns the addresses that reached
        `MAX_STRIKES` with this failure.
        """
        struck_out = []
        for address in addresses:
            self._strikes[address] += 1
            if self._strikes[address] == self.MAX_STRIKES:
                struck_out.append(address)
                if address in self._sessions:
                    self._evict(address, 'sent corrupt data')
        self._fill_vacancies()
        return struck_out

    def _eviction_reason(
        self, session: PeerSession, task: asyncio.Task, now: float, interval: float
    ) -> Optional[str]:
        state = session.state
        if task.done():
            return 'disconnected'
        if self._strikes[session.address] >= self.MAX_STRIKES:
            return 'sent corrupt data'
        if state.admitted_at > now - interval:
            return None
        # unchoked peers we had nothing to ask for are not judged on throughput
        if state.bytes_received_window == 0 and (
            state.choked_by_peer or state.requested_in_window
        ):
            return 'no data received'
        if (
            state.choked_by_peer
            and state.choked_since is not None
            and now - state.choked_since >= interval * self.CHOKE_GRACE_INTERVALS
        ):
            return 'choked for too long'
        return None

    def _fill_vacancies(self) -> None:
        if not self._accepting:
            return
        # evicted sessions still winding down count against the limit
        while self._candidates and (
            len(self._tasks) + len(self._retired) < self._config.active_peers
        ):
            self._admit(self._candidates.popleft())
        if self.exhausted and not self._exhaustion_reported:
            self._exhaustion_reported = True
            self._logger.warning(
                'No candidate peers left, running with %d of %d peers',
                len(self._tasks),
                self._config.active_peers,
            )

    def _admit(self, address: wyvern.protocol.PeerAddress) -> None:
        session = self._session_factory(address)
        now = asyncio.get_running_loop().time()
        session.state.admitted_at = now
        session.state.choked_since = now
        task = asyncio.create_task(session.run())
        self._sessions[address] = session
        self._tasks[address] = task
        task.add_done_callback(functools.partial(self._on_session_done, address))
        self._logger.debug('Admitted peer %s', address)

    def _evict(self, address: wyvern.protocol.PeerAddress, reason: str) -> None:
        session = self._sessions.pop(address)
        task = self._tasks.pop(address)
        self._logger.info('Evicting peer %s: %s', address, reason)
        # release before the session is dropped, it only winds down later
        session.release_claims()
        session.stop()
        task.cancel()
        self._retired.add(task)

    def _on_session_done(self, address: wyvern.protocol.PeerAddress, task: asyncio.Task) -> None:
        if task in self._retired:
            self._retired.discard(task)
        elif self._tasks.get(address) is task:
            session = self._sessions.pop(address)
            del self._tasks[address]
            session.release_claims()
        else:
            return

        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            self._logger.error('Peer %s failed: %s', address, exc)
            if self._on_fatal is not None:
                self._on_fatal(exc)
            return
        self._fill_vacancies()

    async def _rotation_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.peer_update_interval)
            self._logger.debug('Running peer rotation, %d peers active', len(self._tasks))
            self.evaluate()
