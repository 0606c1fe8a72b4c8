"""
Tests for mediaforge.core.events module.
"""

import threading

from conftest import make_device
from mediaforge.core.events import (
    BatchProgress,
    ChannelAdapter,
    ConfirmationRequest,
    DeviceListChanged,
    NullAdapter,
    Phase,
    ProgressDetail,
    notify,
)


class TestProgressDetail:
    """Tests for ProgressDetail."""

    def test_percentage(self) -> None:
        assert ProgressDetail(bytes_done=25, bytes_total=100).percentage == 25.0

    def test_percentage_unknown(self) -> None:
        assert ProgressDetail(message="Formatting").percentage is None

    def test_to_dict(self) -> None:
        data = ProgressDetail("Copying", 50, 100).to_dict()
        assert data["message"] == "Copying"
        assert data["percentage"] == 50.0


class TestNotify:
    """Tests for notify."""

    def test_failing_callback_is_logged(self) -> None:
        class Broken(NullAdapter):
            def on_batch_progress(self, *args: object) -> None:
                raise RuntimeError("window closed")

        notify(Broken(), "on_batch_progress", 0, Phase.COPY, ProgressDetail())

    def test_null_adapter_declines(self) -> None:
        assert not NullAdapter().confirm_destructive_operation("Continue?")


class TestChannelAdapter:
    """Tests for ChannelAdapter."""

    def test_messages_in_order(self) -> None:
        adapter = ChannelAdapter()
        adapter.on_device_list_changed((make_device(),))
        adapter.on_batch_progress(0, Phase.PLAN, ProgressDetail("Planning"))

        messages = list(adapter.drain())

        assert isinstance(messages[0], DeviceListChanged)
        assert isinstance(messages[1], BatchProgress)
        assert messages[1].phase is Phase.PLAN
        assert list(adapter.drain()) == []

    def test_confirmation_round_trip(self) -> None:
        adapter = ChannelAdapter()
        answers: list[bool] = []

        worker = threading.Thread(
            target=lambda: answers.append(adapter.confirm_destructive_operation("Erase?"))
        )
        worker.start()
        request = adapter.channel.get(timeout=2)
        assert isinstance(request, ConfirmationRequest)
        assert request.message == "Erase?"
        request.answer(True)
        worker.join(2)

        assert answers == [True]

    def test_unanswered_confirmation_declines(self) -> None:
        adapter = ChannelAdapter(confirmation_timeout=0.01)
        assert not adapter.confirm_destructive_operation("Erase?")
