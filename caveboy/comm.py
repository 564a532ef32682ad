"""
comm.py
~~~~~~~

Collective communication between one coordinator (rank 0) and its
workers.

Every rank holds a :class:`Communicator` offering four blocking
collectives: broadcast, scatter, sum-reduce and gather. Ranks are wired
in a star: the coordinator has one duplex channel per worker. Each
collective is a barrier: no rank returns from it before every other
rank has entered it.

Two kinds of channel carry the messages:

- :class:`QueueChannel`, gevent queues between greenlets of one process
- :class:`PipeChannel`, multiprocessing pipes between processes

The same collective code runs over both.
"""

import copy
import enum
import logging
import multiprocessing
from typing import Any, Callable, Dict, List, Optional, Sequence

import gevent
import numpy as np
from gevent.queue import Queue

from caveboy.errors import ProtocolError

logger = logging.getLogger(__name__)

COORDINATOR_RANK = 0

_ACK = '__ack__'


class Role(enum.Enum):
    COORDINATOR = 'coordinator'
    WORKER = 'worker'


# ============================================================================
# CHANNELS
# ============================================================================

class QueueChannel:
    """One end of an in-process duplex link between two greenlets."""

    def __init__(self, inbox: Queue, outbox: Queue):
        self.inbox = inbox
        self.outbox = outbox

    @classmethod
    def pair(cls):
        a_to_b, b_to_a = Queue(), Queue()
        return cls(b_to_a, a_to_b), cls(a_to_b, b_to_a)

    def send(self, message: Any) -> None:
        # Ranks never share memory, even inside one process
        self.outbox.put(copy.deepcopy(message))

    def recv(self) -> Any:
        return self.inbox.get()

    def close(self) -> None:
        pass


class PipeChannel:
    """One end of a multiprocessing pipe."""

    def __init__(self, connection):
        self.connection = connection

    def send(self, message: Any) -> None:
        try:
            self.connection.send(message)
        except (BrokenPipeError, OSError) as e:
            raise ProtocolError(f"Couldn't send to peer: {e}") from e

    def recv(self) -> Any:
        try:
            return self.connection.recv()
        except EOFError:
            raise ProtocolError("Peer hung up") from None

    def close(self) -> None:
        self.connection.close()


# ============================================================================
# COMMUNICATOR
# ============================================================================

class Communicator:
    """
    Collective operations for one rank.

    Args:
        rank: This rank, 0 for the coordinator
        size: Number of ranks, coordinator included
        links: Channel per peer rank. The coordinator holds one per
            worker; a worker holds only ``{0: channel}``
    """

    def __init__(self, rank: int, size: int, links: Dict[int, Any]):
        if size <= 0 or not 0 <= rank < size:
            raise ProtocolError(f"Invalid rank {rank} for group of {size}")
        self.rank = rank
        self.size = size
        self.links = links

    @property
    def role(self) -> Role:
        return Role.COORDINATOR if self.rank == COORDINATOR_RANK else Role.WORKER

    @property
    def is_coordinator(self) -> bool:
        return self.role is Role.COORDINATOR

    @property
    def workers(self) -> range:
        return range(1, self.size)

    # ------------------------------------------------------------------
    # Tagged point to point messages
    # ------------------------------------------------------------------
    def _send(self, peer: int, op: str, payload: Any = None) -> None:
        self.links[peer].send((op, payload))

    def _recv(self, peer: int, op: str) -> Any:
        tag, payload = self.links[peer].recv()
        if tag != op:
            raise ProtocolError(
                f"Rank {self.rank} expected '{op}' from rank {peer}, got '{tag}'"
            )
        return payload

    def _release(self, op: str) -> None:
        """Coordinator side of the closing handshake."""
        for worker in self.workers:
            self._recv(worker, _ACK + op)
        for worker in self.workers:
            self._send(worker, _ACK + op)

    def _arrive(self, op: str) -> None:
        """Worker side of the closing handshake."""
        self._send(COORDINATOR_RANK, _ACK + op)
        self._recv(COORDINATOR_RANK, _ACK + op)

    def _finish(self, op: str) -> None:
        if self.is_coordinator:
            self._release(op)
        else:
            self._arrive(op)

    # ------------------------------------------------------------------
    # Collectives
    # ------------------------------------------------------------------
    def broadcast(self, obj: Any = None) -> Any:
        """Coordinator's ``obj`` is returned on every rank."""
        if self.is_coordinator:
            for worker in self.workers:
                self._send(worker, 'broadcast', obj)
        else:
            obj = self._recv(COORDINATOR_RANK, 'broadcast')
        self._finish('broadcast')
        return obj

    def scatter(self, chunks: Optional[Sequence[Any]] = None) -> Any:
        """
        Rank ``r`` receives ``chunks[r]``; only the coordinator passes
        chunks.
        """
        if self.is_coordinator:
            if chunks is None or len(chunks) != self.size:
                raise ProtocolError(
                    f"scatter needs {self.size} chunks, got "
                    f"{None if chunks is None else len(chunks)}"
                )
            for worker in self.workers:
                self._send(worker, 'scatter', chunks[worker])
            mine = chunks[COORDINATOR_RANK]
        else:
            mine = self._recv(COORDINATOR_RANK, 'scatter')
        self._finish('scatter')
        return mine

    def reduce(self, array: np.ndarray) -> Optional[np.ndarray]:
        """
        Element-wise sum of every rank's array, returned on the
        coordinator (None on workers). Contributions are added in rank
        order.
        """
        array = np.asarray(array, dtype=np.float64)
        if self.is_coordinator:
            total = array.copy()
            for worker in self.workers:
                part = np.asarray(self._recv(worker, 'reduce'))
                if part.shape != total.shape:
                    raise ProtocolError(
                        f"reduce shape mismatch: rank {worker} sent {part.shape}, "
                        f"expected {total.shape}"
                    )
                total += part
            self._release('reduce')
            return total

        self._send(COORDINATOR_RANK, 'reduce', array)
        self._arrive('reduce')
        return None

    def gather(self, obj: Any) -> Optional[List[Any]]:
        """Every rank's ``obj`` in rank order on the coordinator, None elsewhere."""
        if self.is_coordinator:
            gathered = [obj]
            for worker in self.workers:
                gathered.append(self._recv(worker, 'gather'))
            self._release('gather')
            return gathered

        self._send(COORDINATOR_RANK, 'gather', obj)
        self._arrive('gather')
        return None

    def barrier(self) -> None:
        self.gather(None)

    def close(self) -> None:
        for channel in self.links.values():
            channel.close()

    def __repr__(self) -> str:
        return f"Communicator(rank={self.rank}, size={self.size}, role={self.role.value})"


# ============================================================================
# GROUPS
# ============================================================================

def local_group(size: int) -> List[Communicator]:
    """Communicators for ``size`` ranks living in this process."""
    if size <= 0:
        raise ProtocolError(f"Group size must be positive, got {size}")
    coordinator_links = {}
    worker_links = {}
    for worker in range(1, size):
        coordinator_end, worker_end = QueueChannel.pair()
        coordinator_links[worker] = coordinator_end
        worker_links[worker] = {COORDINATOR_RANK: worker_end}

    comms = [Communicator(COORDINATOR_RANK, size, coordinator_links)]
    comms.extend(Communicator(w, size, worker_links[w]) for w in range(1, size))
    return comms


def run_local_group(
    size: int,
    target: Callable[..., Any],
    *args,
    root_kwargs: Optional[Dict[str, Any]] = None,
    **kwargs
) -> List[Any]:
    """
    Run ``target(comm, *args, **kwargs)`` on ``size`` greenlets.

    The coordinator additionally receives ``root_kwargs`` (data only the
    coordinator holds, such as the full pattern set).

    Returns:
        list: each rank's return value, in rank order

    Raises:
        Exception: the first exception raised by any rank
    """
    comms = local_group(size)
    greenlets = []
    for comm in comms:
        call_kwargs = dict(kwargs)
        if comm.is_coordinator and root_kwargs:
            call_kwargs.update(root_kwargs)
        greenlets.append(gevent.spawn(target, comm, *args, **call_kwargs))

    try:
        gevent.joinall(greenlets, raise_error=True)
    finally:
        gevent.killall([g for g in greenlets if not g.dead])
    return [g.value for g in greenlets]


def _process_main(rank, size, connection, inherited, target, args, kwargs):
    # Coordinator ends of earlier workers' pipes, copied in by fork
    for other in inherited:
        other.close()
    channel = PipeChannel(connection)
    comm = Communicator(rank, size, {COORDINATOR_RANK: channel})
    try:
        target(comm, *args, **kwargs)
    finally:
        comm.close()


def run_process_group(
    size: int,
    target: Callable[..., Any],
    *args,
    root_kwargs: Optional[Dict[str, Any]] = None,
    **kwargs
) -> Any:
    """
    Run ``target(comm, *args, **kwargs)`` on ``size`` ranks: the
    coordinator in this process and each worker in its own process.

    ``target`` and its arguments must be picklable.

    Returns:
        The coordinator's return value

    Raises:
        ProtocolError: If a worker process exits with a non zero status
    """
    if size <= 0:
        raise ProtocolError(f"Group size must be positive, got {size}")

    links = {}
    processes = []
    for rank in range(1, size):
        parent_end, child_end = multiprocessing.Pipe(duplex=True)
        process = multiprocessing.Process(
            target=_process_main,
            args=(rank, size, child_end, [l.connection for l in links.values()],
                  target, args, kwargs),
            name=f'caveboy-worker-{rank}'
        )
        process.start()
        child_end.close()
        links[rank] = PipeChannel(parent_end)
        processes.append(process)

    comm = Communicator(COORDINATOR_RANK, size, links)
    call_kwargs = dict(kwargs)
    call_kwargs.update(root_kwargs or {})
    try:
        result = target(comm, *args, **call_kwargs)
    finally:
        # Closing the pipes unblocks any worker still waiting on us
        comm.close()
        for process in processes:
            process.join()

    failed = [(p.name, p.exitcode) for p in processes if p.exitcode != 0]
    if failed:
        raise ProtocolError(f"Worker process(es) failed: {failed}")
    return result
