"""
test_comm.py
~~~~~~~~~~~~

Tests for the communicator collectives over in-process ranks.
"""

import pytest
import os
import sys

import numpy as np

# Add repository root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from caveboy.comm import (
    COORDINATOR_RANK,
    Communicator,
    QueueChannel,
    Role,
    local_group,
    run_local_group
)
from caveboy.errors import ProtocolError


def collectives(comm):
    """Run one of each collective and return what this rank saw."""
    greeting = comm.broadcast('hello' if comm.is_coordinator else None)
    chunk = comm.scatter([10, 20, 30] if comm.is_coordinator else None)
    total = comm.reduce(np.array([float(comm.rank), 1.0]))
    gathered = comm.gather(comm.rank * 2)
    comm.barrier()
    return greeting, chunk, total, gathered


def bad_scatter(comm):
    return comm.scatter([1] if comm.is_coordinator else None)


def mismatched_reduce(comm):
    return comm.reduce(np.zeros(2 if comm.is_coordinator else 3))


def mutate_broadcast(comm):
    data = np.zeros(3)
    received = comm.broadcast(data if comm.is_coordinator else None)
    if not comm.is_coordinator:
        received[:] = comm.rank
    comm.barrier()
    return received


@pytest.mark.unit
class TestCommunicator:
    """Test rank bookkeeping."""

    def test_roles(self):
        """Test that rank 0 is the coordinator."""
        comms = local_group(3)
        assert [c.rank for c in comms] == [0, 1, 2]
        assert comms[COORDINATOR_RANK].role is Role.COORDINATOR
        assert all(c.role is Role.WORKER for c in comms[1:])
        assert list(comms[0].workers) == [1, 2]

    def test_invalid_rank(self):
        """Test that a rank outside the group is refused."""
        with pytest.raises(ProtocolError):
            Communicator(3, 3, {})

    def test_invalid_group_size(self):
        """Test that an empty group is refused."""
        with pytest.raises(ProtocolError):
            local_group(0)

    def test_unexpected_message(self):
        """Test that a message with the wrong tag is a protocol error."""
        a, b = QueueChannel.pair()
        coordinator = Communicator(0, 2, {1: a})
        worker = Communicator(1, 2, {0: b})
        coordinator._send(1, 'gather', 1)
        with pytest.raises(ProtocolError):
            worker.broadcast()


@pytest.mark.unit
class TestCollectives:
    """Test collectives over gevent ranks."""

    def test_all_collectives(self):
        """Test broadcast, scatter, reduce and gather results on every rank."""
        results = run_local_group(3, collectives)

        for rank, (greeting, chunk, total, gathered) in enumerate(results):
            assert greeting == 'hello'
            assert chunk == [10, 20, 30][rank]
            if rank == COORDINATOR_RANK:
                assert total.tolist() == [3.0, 3.0]
                assert gathered == [0, 2, 4]
            else:
                assert total is None
                assert gathered is None

    def test_single_rank_group(self):
        """Test that a group of one is its own coordinator."""
        greeting, chunk, total, gathered = run_local_group(1, collectives_single)[0]
        assert greeting == 'solo'
        assert chunk == 'only'
        assert total.tolist() == [0.0, 1.0]
        assert gathered == [0]

    def test_ranks_do_not_share_buffers(self):
        """Test that a worker changing a received array leaves others alone."""
        results = run_local_group(3, mutate_broadcast)
        assert results[0].tolist() == [0.0, 0.0, 0.0]
        assert results[1].tolist() == [1.0, 1.0, 1.0]
        assert results[2].tolist() == [2.0, 2.0, 2.0]

    def test_scatter_needs_one_chunk_per_rank(self):
        """Test that a short chunk list is a protocol error."""
        with pytest.raises(ProtocolError):
            run_local_group(2, bad_scatter)

    def test_reduce_shape_mismatch(self):
        """Test that arrays of different shapes cannot be reduced."""
        with pytest.raises(ProtocolError):
            run_local_group(2, mismatched_reduce)


def collectives_single(comm):
    greeting = comm.broadcast('solo')
    chunk = comm.scatter(['only'])
    total = comm.reduce(np.array([0.0, 1.0]))
    gathered = comm.gather(comm.rank)
    return greeting, chunk, total, gathered
