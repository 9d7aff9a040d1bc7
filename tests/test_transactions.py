"""
Tests for the savings endpoints: deposits, withdrawals, the PIN-gated
pending flow, history, and admin reversals.

Critical scenarios tested:
  - Deposits credit and withdrawals debit the balance exactly
  - Withdrawals exceeding the balance are rejected and leave no row behind
  - With a PIN set, large amounts are held PENDING until confirmed
  - A PENDING transaction can be confirmed once, within 20 minutes
  - Cancelled and expired transactions never touch the balance
  - Two concurrent withdrawals can't both spend the same money
  - Reversals restore the balance and can only happen once
"""

import asyncio
import uuid
from datetime import timedelta

from sqlalchemy import update

from savings.clock import utcnow
from savings.models.transaction import Transaction


PASSWORD = "SecurePass123!"
THRESHOLD = 100_000


async def set_pin(client, pin="1234"):
    response = await client.post(
        "/security/pin", json={"pin": pin, "current_password": PASSWORD}
    )
    assert response.status_code == 200, response.text


async def balance_of(client, headers=None):
    response = await client.get("/savings/balance", headers=headers)
    assert response.status_code == 200
    return response.json()


async def age_transaction(session_factory, txn_id, minutes):
    """Move a transaction's created_at into the past."""
    async with session_factory() as session:
        await session.execute(
            update(Transaction)
            .where(Transaction.id == uuid.UUID(txn_id))
            .values(created_at=utcnow() - timedelta(minutes=minutes))
        )
        await session.commit()


# ---------------------------------------------------------------------------
# Deposits
# ---------------------------------------------------------------------------

class TestDeposit:
    """Tests for POST /savings/deposit."""

    async def test_deposit_success(self, authenticated_client):
        response = await authenticated_client.post(
            "/savings/deposit",
            json={"amount_cents": 10000, "description": "Paycheck"},
        )
        assert response.status_code == 201
        data = response.json()
        assert data["type"] == "DEPOSIT"
        assert data["direction"] == "credit"
        assert data["status"] == "COMPLETED"
        assert data["amount_cents"] == 10000
        assert data["description"] == "Paycheck"
        assert data["ref_id"].startswith("TXN")
        assert len(data["ref_id"]) == 14

        balance = await balance_of(authenticated_client)
        assert balance["balance_cents"] == 10000

    async def test_deposit_zero_rejected(self, authenticated_client):
        response = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": 0}
        )
        assert response.status_code == 422

    async def test_deposit_negative_rejected(self, authenticated_client):
        response = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": -500}
        )
        assert response.status_code == 422

    async def test_deposit_fractional_rejected(self, authenticated_client):
        response = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": 10.5}
        )
        assert response.status_code == 422

    async def test_deposit_over_ceiling_rejected(self, authenticated_client):
        max_balance = 9_999_999_999
        first = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": max_balance}
        )
        assert first.status_code == 201

        response = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": 1}
        )
        assert response.status_code == 422
        assert response.json()["error_type"] == "balance_limit_exceeded"

        balance = await balance_of(authenticated_client)
        assert balance["balance_cents"] == max_balance

    async def test_deposit_sends_confirmation(self, authenticated_client, queue, outbox):
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 123456})
        await queue.drain()

        [message] = [
            m for m in outbox.to("testuser@example.com") if m["subject"] == "Deposit received"
        ]
        assert "1,234.56" in message["body"]


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

class TestWithdraw:
    """Tests for POST /savings/withdraw."""

    async def test_withdraw_success(self, authenticated_client):
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 10000})
        response = await authenticated_client.post(
            "/savings/withdraw", json={"amount_cents": 3000}
        )
        assert response.status_code == 201
        assert response.json()["type"] == "WITHDRAWAL"
        assert response.json()["direction"] == "debit"

        balance = await balance_of(authenticated_client)
        assert balance["balance_cents"] == 7000

    async def test_withdraw_exact_balance(self, authenticated_client):
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 5000})
        response = await authenticated_client.post(
            "/savings/withdraw", json={"amount_cents": 5000}
        )
        assert response.status_code == 201
        assert (await balance_of(authenticated_client))["balance_cents"] == 0

    async def test_insufficient_balance_rejected(self, authenticated_client):
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 1000})
        response = await authenticated_client.post(
            "/savings/withdraw", json={"amount_cents": 1001}
        )
        assert response.status_code == 422
        data = response.json()
        assert data["error_type"] == "insufficient_balance"
        assert data["requested_cents"] == 1001
        assert data["available_cents"] == 1000

    async def test_insufficient_balance_records_nothing(self, authenticated_client):
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 1000})
        await authenticated_client.post("/savings/withdraw", json={"amount_cents": 5000})

        history = await authenticated_client.get("/savings/transactions")
        assert history.json()["total"] == 1
        assert (await balance_of(authenticated_client))["balance_cents"] == 1000

    async def test_insufficient_balance_notifies(self, authenticated_client, queue, outbox):
        await authenticated_client.post("/savings/withdraw", json={"amount_cents": 5000})
        await queue.drain()

        subjects = [m["subject"] for m in outbox.to("testuser@example.com")]
        assert "Withdrawal declined" in subjects


# ---------------------------------------------------------------------------
# PIN-gated pending transactions
# ---------------------------------------------------------------------------

class TestPendingTransactions:
    """Deposits and withdrawals held for PIN confirmation."""

    async def test_no_pin_means_no_pending(self, authenticated_client):
        response = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": THRESHOLD * 5}
        )
        assert response.json()["status"] == "COMPLETED"

    async def test_below_threshold_completes_immediately(self, authenticated_client):
        await set_pin(authenticated_client)
        response = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": THRESHOLD - 1}
        )
        assert response.json()["status"] == "COMPLETED"

    async def test_at_threshold_is_pending(self, authenticated_client, queue, outbox):
        await set_pin(authenticated_client)
        response = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": THRESHOLD}
        )
        assert response.status_code == 201
        assert response.json()["status"] == "PENDING"

        # The balance is untouched until confirmation
        balance = await balance_of(authenticated_client)
        assert balance["balance_cents"] == 0
        assert balance["match"] is True

        await queue.drain()
        subjects = [m["subject"] for m in outbox.to("testuser@example.com")]
        assert "Confirm your transaction" in subjects

    async def test_confirm_with_pin(self, authenticated_client):
        await set_pin(authenticated_client)
        pending = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": THRESHOLD}
        )
        txn_id = pending.json()["id"]

        response = await authenticated_client.post(
            f"/savings/confirm/{txn_id}", json={"pin": "1234"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "COMPLETED"
        assert (await balance_of(authenticated_client))["balance_cents"] == THRESHOLD

    async def test_confirm_twice_applies_once(self, authenticated_client):
        await set_pin(authenticated_client)
        pending = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": THRESHOLD}
        )
        txn_id = pending.json()["id"]

        await authenticated_client.post(f"/savings/confirm/{txn_id}", json={"pin": "1234"})
        again = await authenticated_client.post(
            f"/savings/confirm/{txn_id}", json={"pin": "1234"}
        )
        assert again.status_code == 409
        assert again.json()["error_type"] == "transaction_not_pending"
        assert (await balance_of(authenticated_client))["balance_cents"] == THRESHOLD

    async def test_confirm_wrong_pin(self, authenticated_client):
        await set_pin(authenticated_client)
        pending = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": THRESHOLD}
        )
        txn_id = pending.json()["id"]

        response = await authenticated_client.post(
            f"/savings/confirm/{txn_id}", json={"pin": "9999"}
        )
        assert response.status_code == 400
        assert response.json()["error_type"] == "invalid_pin"

        txn = await authenticated_client.get(f"/savings/transactions/{txn_id}")
        assert txn.json()["status"] == "PENDING"
        assert (await balance_of(authenticated_client))["balance_cents"] == 0

    async def test_pending_withdrawal_checks_balance_on_confirm(self, authenticated_client):
        await authenticated_client.post("/savings/deposit", json={"amount_cents": THRESHOLD - 1})
        await authenticated_client.post("/savings/deposit", json={"amount_cents": THRESHOLD - 1})
        await set_pin(authenticated_client)

        pending = await authenticated_client.post(
            "/savings/withdraw", json={"amount_cents": THRESHOLD}
        )
        assert pending.json()["status"] == "PENDING"

        # Spend the money before confirming
        await authenticated_client.post("/savings/withdraw", json={"amount_cents": 99_999})
        response = await authenticated_client.post(
            f"/savings/confirm/{pending.json()['id']}", json={"pin": "1234"}
        )
        assert response.status_code == 422
        assert response.json()["error_type"] == "insufficient_balance"

        balance = await balance_of(authenticated_client)
        assert balance["balance_cents"] == 99_999
        assert balance["match"] is True

    async def test_pending_withdrawal_rejected_early(self, authenticated_client):
        await set_pin(authenticated_client)
        response = await authenticated_client.post(
            "/savings/withdraw", json={"amount_cents": THRESHOLD}
        )
        assert response.status_code == 422
        history = await authenticated_client.get("/savings/transactions")
        assert history.json()["total"] == 0

    async def test_cancel_pending(self, authenticated_client):
        await set_pin(authenticated_client)
        pending = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": THRESHOLD}
        )
        txn_id = pending.json()["id"]

        response = await authenticated_client.post(f"/savings/cancel/{txn_id}")
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"

        confirm = await authenticated_client.post(
            f"/savings/confirm/{txn_id}", json={"pin": "1234"}
        )
        assert confirm.status_code == 409
        assert (await balance_of(authenticated_client))["balance_cents"] == 0

    async def test_cancel_completed_rejected(self, authenticated_client):
        deposit = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": 1000}
        )
        response = await authenticated_client.post(f"/savings/cancel/{deposit.json()['id']}")
        assert response.status_code == 409

    async def test_confirm_just_before_expiry(self, authenticated_client, session_factory):
        await set_pin(authenticated_client)
        pending = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": THRESHOLD}
        )
        txn_id = pending.json()["id"]
        await age_transaction(session_factory, txn_id, minutes=19)

        response = await authenticated_client.post(
            f"/savings/confirm/{txn_id}", json={"pin": "1234"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "COMPLETED"

    async def test_confirm_after_expiry_cancels(self, authenticated_client, session_factory):
        await set_pin(authenticated_client)
        pending = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": THRESHOLD}
        )
        txn_id = pending.json()["id"]
        await age_transaction(session_factory, txn_id, minutes=21)

        response = await authenticated_client.post(
            f"/savings/confirm/{txn_id}", json={"pin": "1234"}
        )
        assert response.status_code == 410
        assert response.json()["error_type"] == "transaction_expired"

        # The expiry is recorded, not rolled back with the error
        txn = await authenticated_client.get(f"/savings/transactions/{txn_id}")
        assert txn.json()["status"] == "CANCELLED"
        assert (await balance_of(authenticated_client))["balance_cents"] == 0

    async def test_set_pin_wrong_password(self, authenticated_client):
        response = await authenticated_client.post(
            "/security/pin", json={"pin": "1234", "current_password": "WrongPassword!"}
        )
        assert response.status_code == 401
        me = await authenticated_client.get("/auth/me")
        assert me.json()["has_pin"] is False

    async def test_set_pin_rejects_non_digits(self, authenticated_client):
        response = await authenticated_client.post(
            "/security/pin", json={"pin": "12ab", "current_password": PASSWORD}
        )
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

class TestHistory:
    """Tests for GET /savings/transactions."""

    async def test_pagination(self, authenticated_client):
        for amount in (100, 200, 300, 400, 500):
            await authenticated_client.post("/savings/deposit", json={"amount_cents": amount})

        response = await authenticated_client.get("/savings/transactions?page=3&limit=2")
        data = response.json()
        assert data["total"] == 5
        assert data["pages"] == 3
        assert data["page"] == 3
        assert len(data["items"]) == 1

    async def test_newest_first(self, authenticated_client):
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 100})
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 200})

        items = (await authenticated_client.get("/savings/transactions")).json()["items"]
        assert [i["amount_cents"] for i in items] == [200, 100]

    async def test_filter_by_type(self, authenticated_client):
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 1000})
        await authenticated_client.post("/savings/withdraw", json={"amount_cents": 400})

        response = await authenticated_client.get("/savings/transactions?type=WITHDRAWAL")
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["type"] == "WITHDRAWAL"

    async def test_filter_by_status(self, authenticated_client):
        await set_pin(authenticated_client)
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 1000})
        await authenticated_client.post("/savings/deposit", json={"amount_cents": THRESHOLD})

        response = await authenticated_client.get("/savings/transactions?status=PENDING")
        assert response.json()["total"] == 1

    async def test_empty_history(self, authenticated_client):
        data = (await authenticated_client.get("/savings/transactions")).json()
        assert data == {"items": [], "total": 0, "page": 1, "limit": 20, "pages": 0}


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:
    """Balance changes are conditional UPDATEs, so races can't overdraw."""

    async def test_concurrent_withdrawals_cannot_overdraw(self, authenticated_client):
        """Balance 1000, two concurrent 600 withdrawals: exactly one wins."""
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 1000})

        results = await asyncio.gather(
            authenticated_client.post("/savings/withdraw", json={"amount_cents": 600}),
            authenticated_client.post("/savings/withdraw", json={"amount_cents": 600}),
        )
        assert sorted(r.status_code for r in results) == [201, 422]

        balance = await balance_of(authenticated_client)
        assert balance["balance_cents"] == 400
        assert balance["match"] is True

    async def test_concurrent_confirms_apply_once(self, authenticated_client):
        await set_pin(authenticated_client)
        pending = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": THRESHOLD}
        )
        txn_id = pending.json()["id"]

        results = await asyncio.gather(
            authenticated_client.post(f"/savings/confirm/{txn_id}", json={"pin": "1234"}),
            authenticated_client.post(f"/savings/confirm/{txn_id}", json={"pin": "1234"}),
        )
        assert sorted(r.status_code for r in results) == [200, 409]

        balance = await balance_of(authenticated_client)
        assert balance["balance_cents"] == THRESHOLD
        assert balance["match"] is True


# ---------------------------------------------------------------------------
# Admin reversals and audit
# ---------------------------------------------------------------------------

class TestAdminReversal:
    """Tests for POST /admin/reverse/{id} and the admin audit endpoints."""

    async def test_reverse_deposit(self, authenticated_client, admin_headers):
        deposit = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": 5000}
        )
        txn_id = deposit.json()["id"]

        response = await authenticated_client.post(
            f"/admin/reverse/{txn_id}",
            json={"reason": "Duplicate deposit"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        original = response.json()["original"]
        reversal = response.json()["reversal"]
        assert original["status"] == "REVERSED"
        assert original["reversed_reason"] == "Duplicate deposit"
        assert original["reversed_by"] is not None
        assert original["reversed_at"] is not None
        assert reversal["type"] == "REVERSAL"
        assert reversal["direction"] == "debit"
        assert reversal["status"] == "COMPLETED"
        assert reversal["reversal_of_id"] == txn_id

        balance = await balance_of(authenticated_client)
        assert balance["balance_cents"] == 0
        assert balance["computed_balance_cents"] == 0
        assert balance["match"] is True

    async def test_reverse_withdrawal(self, authenticated_client, admin_headers):
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 5000})
        withdrawal = await authenticated_client.post(
            "/savings/withdraw", json={"amount_cents": 2000}
        )

        response = await authenticated_client.post(
            f"/admin/reverse/{withdrawal.json()['id']}",
            json={"reason": "Disputed"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["reversal"]["direction"] == "credit"
        assert (await balance_of(authenticated_client))["balance_cents"] == 5000

    async def test_reverse_twice_rejected(self, authenticated_client, admin_headers):
        deposit = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": 5000}
        )
        path = f"/admin/reverse/{deposit.json()['id']}"
        await authenticated_client.post(path, json={"reason": "First"}, headers=admin_headers)

        response = await authenticated_client.post(
            path, json={"reason": "Second"}, headers=admin_headers
        )
        assert response.status_code == 409
        assert response.json()["error_type"] == "already_reversed"
        assert (await balance_of(authenticated_client))["balance_cents"] == 0

    async def test_reversal_cannot_be_reversed(self, authenticated_client, admin_headers):
        deposit = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": 5000}
        )
        first = await authenticated_client.post(
            f"/admin/reverse/{deposit.json()['id']}",
            json={"reason": "Mistake"},
            headers=admin_headers,
        )
        reversal_id = first.json()["reversal"]["id"]

        response = await authenticated_client.post(
            f"/admin/reverse/{reversal_id}", json={"reason": "Undo"}, headers=admin_headers
        )
        assert response.status_code == 409
        assert response.json()["error_type"] == "transaction_not_reversible"

    async def test_pending_cannot_be_reversed(self, authenticated_client, admin_headers):
        await set_pin(authenticated_client)
        pending = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": THRESHOLD}
        )
        response = await authenticated_client.post(
            f"/admin/reverse/{pending.json()['id']}",
            json={"reason": "Too early"},
            headers=admin_headers,
        )
        assert response.status_code == 409
        assert response.json()["error_type"] == "transaction_not_reversible"

    async def test_spent_deposit_cannot_be_reversed(self, authenticated_client, admin_headers):
        deposit = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": 5000}
        )
        await authenticated_client.post("/savings/withdraw", json={"amount_cents": 4000})

        response = await authenticated_client.post(
            f"/admin/reverse/{deposit.json()['id']}",
            json={"reason": "Fraud"},
            headers=admin_headers,
        )
        assert response.status_code == 422
        assert response.json()["error_type"] == "insufficient_balance"

        txn = await authenticated_client.get(f"/savings/transactions/{deposit.json()['id']}")
        assert txn.json()["status"] == "COMPLETED"
        assert (await balance_of(authenticated_client))["balance_cents"] == 1000

    async def test_reverse_requires_reason(self, authenticated_client, admin_headers):
        deposit = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": 5000}
        )
        response = await authenticated_client.post(
            f"/admin/reverse/{deposit.json()['id']}", json={"reason": ""}, headers=admin_headers
        )
        assert response.status_code == 422

    async def test_reverse_unknown_transaction(self, admin_client):
        response = await admin_client.post(
            f"/admin/reverse/{uuid.uuid4()}", json={"reason": "Missing"}
        )
        assert response.status_code == 404

    async def test_reversal_notifies_owner(self, authenticated_client, admin_headers, queue, outbox):
        deposit = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": 5000}
        )
        await authenticated_client.post(
            f"/admin/reverse/{deposit.json()['id']}",
            json={"reason": "Duplicate"},
            headers=admin_headers,
        )
        await queue.drain()

        [message] = [
            m for m in outbox.to("testuser@example.com") if m["subject"] == "Transaction reversed"
        ]
        assert deposit.json()["ref_id"] in message["body"]
        assert "Duplicate" in message["body"]

    async def test_admin_lists_and_filters(self, authenticated_client, admin_headers):
        await authenticated_client.post("/savings/deposit", json={"amount_cents": 5000})
        await authenticated_client.post("/savings/withdraw", json={"amount_cents": 1000})

        everything = await authenticated_client.get("/admin/transactions", headers=admin_headers)
        assert len(everything.json()) == 2

        withdrawals = await authenticated_client.get(
            "/admin/transactions?type=WITHDRAWAL", headers=admin_headers
        )
        assert [t["type"] for t in withdrawals.json()] == ["WITHDRAWAL"]

    async def test_admin_gets_any_transaction(self, authenticated_client, admin_headers):
        deposit = await authenticated_client.post(
            "/savings/deposit", json={"amount_cents": 5000}
        )
        response = await authenticated_client.get(
            f"/admin/transactions/{deposit.json()['id']}", headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["ref_id"] == deposit.json()["ref_id"]
