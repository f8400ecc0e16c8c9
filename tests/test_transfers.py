from datetime import datetime, timedelta

import pytest

from audit import verify_audit_chain
from errors import AccessDenied, InvalidInput, NotFound
from models import AuditLog, StorageType, TransferStatus
from sessions import FileDescriptor
from transfers import PaymentConfig, TransferManager

NOW = datetime(2024, 5, 1, 12, 0)


def _descriptor(file_id, storage_type=StorageType.REMOTE, size=10):
    return FileDescriptor(
        file_id=file_id,
        original_name=f"{file_id}.txt",
        storage_key=f"prod/2024/05/01/t_x/f_{file_id}_{file_id}.txt",
        storage_type=storage_type,
        mime_type="text/plain",
        size=size,
    )


def _manager(db, stores, now=NOW):
    return TransferManager(db, stores, clock=lambda: now)


class TestCreate:

    def test_tokens_have_expected_entropy(self, db, stores):
        transfer = _manager(db, stores).create_transfer([_descriptor("a")])
        assert len(transfer.share_link) == 32      # 128 bits, hex
        assert len(transfer.access_key) == 16      # 64 bits, hex
        int(transfer.share_link, 16)
        int(transfer.access_key, 16)

    def test_defaults(self, db, stores):
        transfer = _manager(db, stores).create_transfer([_descriptor("a", size=3), _descriptor("b", size=4)])
        assert transfer.status == TransferStatus.ACTIVE.value
        assert transfer.expiry_date == NOW + timedelta(days=7)
        assert transfer.total_size == 7
        assert transfer.download_count == 0
        assert [f.original_name for f in transfer.files] == ["a.txt", "b.txt"]
        assert transfer.is_payment_required is False

    def test_expiry_hours(self, db, stores):
        transfer = _manager(db, stores).create_transfer([_descriptor("a")], expiry_hours=48)
        assert transfer.expiry_date == NOW + timedelta(hours=48)

    def test_share_links_are_unique(self, db, stores):
        manager = _manager(db, stores)
        links = {manager.create_transfer([_descriptor(f"f{i}")]).share_link for i in range(20)}
        assert len(links) == 20

    @pytest.mark.parametrize("kwargs", [
        {"files": []},
        {"files": [_descriptor("a", size=0)]},
        {"files": [_descriptor("a")], "retention_days": 0},
        {"files": [_descriptor("a")], "retention_days": 3, "expiry_hours": 5},
    ])
    def test_invalid_requests(self, db, stores, kwargs):
        with pytest.raises(InvalidInput):
            _manager(db, stores).create_transfer(**kwargs)

    def test_payment_config_validation(self):
        with pytest.raises(InvalidInput):
            PaymentConfig(amount=0)
        with pytest.raises(InvalidInput):
            PaymentConfig(amount=5, currency="EURO")
        assert PaymentConfig(amount="9.50", currency="usd").currency == "USD"


class TestAccess:

    @pytest.fixture
    def transfer(self, db, stores):
        return _manager(db, stores).create_transfer([_descriptor("a")])

    def _denied_message(self, fn):
        with pytest.raises(AccessDenied) as exc:
            fn()
        return str(exc.value)

    def test_every_failure_looks_the_same(self, db, stores, transfer):
        messages = set()
        manager = _manager(db, stores)
        messages.add(self._denied_message(lambda: manager.authorize_access("no-such-link", transfer.access_key)))
        messages.add(self._denied_message(lambda: manager.authorize_access(transfer.share_link, "wrong-key")))

        late = _manager(db, stores, now=NOW + timedelta(days=8))
        messages.add(self._denied_message(lambda: late.authorize_access(transfer.share_link, transfer.access_key)))

        unpaid = manager.create_transfer([_descriptor("b")], payment=PaymentConfig(amount=5))
        messages.add(self._denied_message(lambda: manager.authorize_access(unpaid.share_link, unpaid.access_key)))

        transfer.status = TransferStatus.EXPIRED.value
        db.commit()
        messages.add(self._denied_message(lambda: manager.authorize_access(transfer.share_link, transfer.access_key)))

        assert len(messages) == 1
        assert messages == {AccessDenied.MESSAGE}

    def test_unpaid_transfer_can_be_viewed_but_not_downloaded(self, db, stores):
        manager = _manager(db, stores)
        transfer = manager.create_transfer([_descriptor("a")], payment=PaymentConfig(amount=5))

        assert manager.get_manifest(transfer.share_link, transfer.access_key).id == transfer.id
        with pytest.raises(AccessDenied):
            manager.authorize_download(transfer.share_link, transfer.access_key)

        manager.mark_paid(transfer.id, "pay_123")
        grant = manager.authorize_download(transfer.share_link, transfer.access_key)
        assert len(grant.downloads) == 1

    def test_download_counts_and_urls(self, db, stores, transfer):
        manager = _manager(db, stores)
        grant = manager.authorize_download(transfer.share_link, transfer.access_key)
        manager.authorize_download(transfer.share_link, transfer.access_key)

        db.refresh(transfer)
        assert transfer.download_count == 2
        assert transfer.last_download_date == NOW
        assert grant.expires_at == NOW + timedelta(seconds=180)
        assert grant.downloads[0]["url"].startswith("https://store.test/prod/")

    def test_local_files_get_signed_api_links(self, db, stores):
        manager = _manager(db, stores)
        transfer = manager.create_transfer([_descriptor("loc", storage_type=StorageType.LOCAL)])
        grant = manager.authorize_download(transfer.share_link, transfer.access_key)
        assert grant.downloads[0]["url"].startswith("/download/local?token=")

    def test_single_file_download(self, db, stores):
        manager = _manager(db, stores)
        transfer = manager.create_transfer([_descriptor("a"), _descriptor("b")])
        target = transfer.files[1]
        grant = manager.authorize_download(transfer.share_link, transfer.access_key, file_id=target.id)
        assert [d["file_id"] for d in grant.downloads] == [target.id]
        with pytest.raises(NotFound):
            manager.authorize_download(transfer.share_link, transfer.access_key, file_id="other")


class TestPaymentAndAudit:

    def test_mark_paid_is_idempotent(self, db, stores):
        manager = _manager(db, stores)
        transfer = manager.create_transfer([_descriptor("a")], payment=PaymentConfig(amount=12))
        manager.mark_paid(transfer.id, "pay_1")
        again = manager.mark_paid(transfer.id, "pay_2")
        assert again.is_paid
        assert again.payment_id == "pay_1"
        assert again.payment_date == NOW

    def test_mark_paid_unknown_transfer(self, db, stores):
        with pytest.raises(NotFound):
            _manager(db, stores).mark_paid("missing", "pay_1")

    def test_audit_chain_records_creation_and_downloads(self, db, stores):
        manager = _manager(db, stores)
        transfer = manager.create_transfer([_descriptor("a")])
        manager.authorize_download(transfer.share_link, transfer.access_key)

        actions = [log.action for log in db.query(AuditLog).order_by(AuditLog.id)]
        assert actions == ["TRANSFER_CREATED", "DOWNLOAD_AUTHORIZED"]
        assert verify_audit_chain(db)["valid"] is True
