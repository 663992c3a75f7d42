"""Unit tests for the leadership capability."""

from __future__ import annotations

import asyncio

import pytest

from iceberg_sink.commit.leadership import Leadership


class TestLeadership:
    def test_follower_by_default(self):
        assert Leadership().is_leader() is False

    def test_failing_check_demotes(self):
        owns_partition = True
        leadership = Leadership(leader=True, check=lambda: owns_partition)
        assert leadership.is_leader() is True

        owns_partition = False
        assert leadership.is_leader() is False
        assert leadership.cancelled is True

        owns_partition = True
        assert leadership.is_leader() is False

    def test_promote_clears_cancellation(self):
        leadership = Leadership(leader=True)
        leadership.demote()
        assert leadership.cancelled is True

        leadership.promote()
        assert leadership.is_leader() is True
        assert leadership.cancelled is False

    @pytest.mark.asyncio
    async def test_wait_demoted(self):
        leadership = Leadership(leader=True)
        waiter = asyncio.create_task(leadership.wait_demoted())
        await asyncio.sleep(0)
        assert not waiter.done()

        leadership.demote()
        await asyncio.wait_for(waiter, timeout=1)
