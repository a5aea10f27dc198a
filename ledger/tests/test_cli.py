from click.testing import CliRunner

from ledger.cli import cli
from ledger.models import PaymentProof

WALLET = "0xcli"


def run(service, *args):
    return CliRunner().invoke(cli, list(args), obj={"service": service})


class TestCli:
    def test_add_credits(self, service):
        service.get_or_create_user(WALLET)

        result = run(service, "add-credits", WALLET, "5")

        assert result.exit_code == 0
        assert "Added 5 credits" in result.output
        assert service.get_user_by_wallet(WALLET).view_credits == 15

    def test_add_credits_rejects_zero(self, service):
        service.get_or_create_user(WALLET)

        result = run(service, "add-credits", WALLET, "0")

        assert result.exit_code == 1
        assert "Valid credits amount is required" in result.output

    def test_user(self, service):
        service.get_or_create_user(WALLET)

        result = run(service, "user", WALLET)

        assert result.exit_code == 0
        assert "View credits" in result.output

    def test_unknown_user(self, service):
        result = run(service, "user", "0xnobody")
        assert result.exit_code == 1
        assert "User not found" in result.output

    def test_set_free_is_idempotent(self, service, paid_video):
        assert run(service, "set-free", paid_video.id).exit_code == 0
        assert run(service, "set-free", paid_video.id).exit_code == 0
        video, _ = service.get_video(paid_video.id)
        assert video.is_free is True

        result = run(service, "set-free", paid_video.id, "--paid")
        assert "is now paid" in result.output

    def test_reconcile(self, service, paid_video):
        service.storage.set_video_fields(paid_video.id, {"totalUnlocks": 3})

        result = run(service, "reconcile", paid_video.id)

        assert result.exit_code == 0
        assert "Repaired" in result.output
        video, _ = service.get_video(paid_video.id)
        assert video.total_unlocks == 0

    def test_reconcile_reports_restored_unlocks(self, service, viewer, paid_video):
        proof = PaymentProof(transaction_hash="0xcli", amount=100000)
        service.unlock_video(viewer.id, paid_video.id, proof)
        service.storage.users[viewer.id]["videosUnlocked"].clear()

        result = run(service, "reconcile", paid_video.id)

        assert result.exit_code == 0
        assert "restored 1 missing unlock(s)" in result.output
