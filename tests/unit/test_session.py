"""
Tests for mediaforge.core.session module.
"""

import json
from pathlib import Path

import pytest

from conftest import FakeBackend, make_device, make_installed_device, make_partition
from mediaforge.core.config import InstallConfig, MediaForgeConfig
from mediaforge.core.credentials import CredentialInput
from mediaforge.core.exceptions import ValidationError
from mediaforge.core.job import BatchStatus, JobResult
from mediaforge.core.layout import PartitionPlan
from mediaforge.core.models import MEGA, FileSystem, SystemSource
from mediaforge.core.session import Session


@pytest.fixture
def backend() -> FakeBackend:
    boot = make_device(
        "sda",
        partitions=[make_partition("sda", 2, 1000, FileSystem.EXFAT, "Exchange", used_bytes=MEGA)],
    )
    fake = FakeBackend([boot, make_device("sdb"), make_installed_device("sdc")])
    fake.used_bytes = 4000 * MEGA
    return fake


@pytest.fixture
def session(sample_config: MediaForgeConfig, backend: FakeBackend) -> Session:
    config = sample_config.model_copy(update={"install": InstallConfig(exchange_mb=1000)})
    with Session(config=config, backend=backend, configure_logging=False) as session:
        yield session


class TestSessionDevices:
    """Tests for device access through the session."""

    def test_get_device(self, session: Session) -> None:
        device = session.get_device("/dev/sdb")
        assert device is not None
        assert device.device == "sdb"
        assert session.get_device("sdz") is None

    def test_list_devices(self, session: Session) -> None:
        assert [d.device for d in session.list_devices()] == ["sda", "sdb", "sdc"]

    def test_detect_source(self, session: Session, source: SystemSource) -> None:
        detected = session.detect_source(source.system_path)

        assert detected.device == "sda"
        assert detected.system_size_bytes == 4000 * MEGA
        assert detected.exchange_partition is not None
        assert detected.exchange_used_bytes == MEGA

    def test_detect_missing_source(self, session: Session, temp_dir: Path) -> None:
        detected = session.detect_source(temp_dir / "missing")
        assert detected.system_size_bytes == 0
        assert not detected.validate()[0]

    def test_plan_install(self, session: Session, source: SystemSource) -> None:
        device = session.get_device("sdb")
        assert device is not None

        plan = session.plan_install(device, source)

        assert isinstance(plan, PartitionPlan)
        assert plan.data_mb == 2700


class TestSessionBatches:
    """Tests for batches started through the session."""

    def test_install(self, session: Session, source: SystemSource) -> None:
        device = session.get_device("sdb")
        assert device is not None

        result = session.install([device], source=source)

        assert isinstance(result, JobResult)
        assert result.success
        assert result.data is not None and result.data.results[0].succeeded

    def test_report_saved(self, session: Session, source: SystemSource) -> None:
        device = session.get_device("sdb")
        assert device is not None

        result = session.install([device], source=source)

        assert isinstance(result, JobResult)
        path = next(iter(session.reports.values()))
        data = json.loads(path.read_text())
        assert data["operation"] == "install"
        assert data["summary"]["succeeded"] == 1

    def test_preflight_blocks_batch(self, session: Session, source: SystemSource) -> None:
        with pytest.raises(ValidationError):
            session.install([], source=source)
        assert session.job_runner.active_job is None

    def test_unconfirmed_credentials(self, session: Session, source: SystemSource) -> None:
        session.config = session.config.model_copy(
            update={"install": InstallConfig(exchange_mb=1000, unlock_method="personal")}
        )
        device = session.get_device("sdb")
        assert device is not None

        with pytest.raises(ValidationError):
            session.install([device], source=source)

    def test_confirmed_credentials_cleared_after_batch(
        self, session: Session, backend: FakeBackend, source: SystemSource
    ) -> None:
        session.config = session.config.model_copy(
            update={"install": InstallConfig(exchange_mb=1000, unlock_method="personal")}
        )
        unlock = session.select_unlock_method(
            "personal", CredentialInput.from_strings(password="pw", password_repeat="pw")
        )
        device = session.get_device("sdb")
        assert device is not None

        session.install([device], source=source)

        assert backend.calls_to("open_encrypted")
        assert unlock.is_cleared
        assert session.credentials.confirmed is None

    def test_rejected_batch_forgets_credentials(
        self, session: Session, backend: FakeBackend, source: SystemSource
    ) -> None:
        session.config = session.config.model_copy(
            update={"install": InstallConfig(exchange_mb=1000, unlock_method="personal")}
        )
        unlock = session.select_unlock_method(
            "personal", CredentialInput.from_strings(password="pw", password_repeat="pw")
        )
        device = session.get_device("sdb")
        assert device is not None

        with pytest.raises(ValidationError):
            session.install([], source=source)

        assert unlock.is_cleared
        assert session.credentials.confirmed is None
        with pytest.raises(ValidationError):
            session.install([device], source=source)
        assert backend.calls_to("open_encrypted") == []
        assert backend.calls_to("write_partition_table") == []

    def test_cleared_credentials_rejected(
        self, session: Session, backend: FakeBackend, source: SystemSource
    ) -> None:
        session.config = session.config.model_copy(
            update={"install": InstallConfig(exchange_mb=1000, unlock_method="personal")}
        )
        unlock = session.select_unlock_method(
            "personal", CredentialInput.from_strings(password="pw", password_repeat="pw")
        )
        unlock.clear()
        device = session.get_device("sdb")
        assert device is not None

        with pytest.raises(ValidationError, match="cleared"):
            session.install([device], source=source)
        assert backend.calls_to("open_encrypted") == []

    def test_reset_in_background(self, session: Session) -> None:
        device = session.get_device("sdc")
        assert device is not None

        job_id = session.reset([device], wait=False)

        assert isinstance(job_id, str)
        result = session.wait(job_id, timeout=5)
        assert result is not None and result.success
        assert session.get_status(job_id) is BatchStatus.COMPLETED

    def test_upgrade(self, session: Session, source: SystemSource) -> None:
        device = session.get_device("sdc")
        assert device is not None

        result = session.upgrade([device], source=source)

        assert isinstance(result, JobResult)
        assert result.success

    def test_cancel_without_batch(self, session: Session) -> None:
        assert not session.cancel()
