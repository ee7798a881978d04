import json
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import aio_pika
import pytest

from circulation.internal_message import (
    REMINDER_QUEUE,
    cleanup_messaging,
    publish_reminder,
    reminder_message,
)
from circulation.schemas import LoanView
from circulation.status import LoanStatus


@pytest.fixture
def overdue_loan(now):
    return LoanView(
        id="7",
        user_id="3",
        book_id="5",
        copy_id="11",
        borrow_date=now - timedelta(days=20),
        due_date=now - timedelta(days=6),
        status=LoanStatus.OVERDUE,
        reminder_sent=True,
    )


def app_with_channel(channel):
    return SimpleNamespace(state=SimpleNamespace(rabbitmq_channel=channel))


def test_reminder_message(overdue_loan, now):
    assert reminder_message(overdue_loan) == {
        "loanId": "7",
        "userId": "3",
        "bookId": "5",
        "dueDate": (now - timedelta(days=6)).isoformat(),
    }


@pytest.mark.asyncio
async def test_publish_reminder(overdue_loan):
    channel = MagicMock()
    channel.default_exchange.publish = AsyncMock()

    assert await publish_reminder(app_with_channel(channel), overdue_loan) is True

    channel.default_exchange.publish.assert_awaited_once()
    message = channel.default_exchange.publish.call_args.args[0]
    assert channel.default_exchange.publish.call_args.kwargs["routing_key"] == (
        REMINDER_QUEUE
    )
    assert message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT
    assert json.loads(message.body)["loanId"] == "7"


@pytest.mark.asyncio
async def test_publish_reminder_without_channel(overdue_loan):
    app = SimpleNamespace(state=SimpleNamespace())
    assert await publish_reminder(app, overdue_loan) is False


@pytest.mark.asyncio
async def test_publish_failure_is_reported(overdue_loan):
    channel = MagicMock()
    channel.default_exchange.publish = AsyncMock(
        side_effect=ConnectionError("broker went away")
    )

    assert await publish_reminder(app_with_channel(channel), overdue_loan) is False


@pytest.mark.asyncio
async def test_cleanup_closes_connection():
    connection = MagicMock()
    connection.close = AsyncMock()
    app = SimpleNamespace(state=SimpleNamespace(rabbitmq_connection=connection))

    await cleanup_messaging(app)

    connection.close.assert_awaited_once()
