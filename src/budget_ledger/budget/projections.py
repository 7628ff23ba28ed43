"""
Budget Module Projections - Read Models for Query Operations

Projections are built from events and provide efficient query access.
They are the "read" side of CQRS. Each registry stores plain dicts shaped
like the matching model, so the same fold also rehydrates a single
aggregate from its own stream.

BudgetCodeRegistry: Current state of all budget codes (main projection)
RevisionRegistry: Budget revision requests
TransferRegistry: Budget transfer requests and their statistics
"""

from decimal import Decimal

from budget_ledger.budget.models import (
    AllocationStatus,
    BudgetCode,
    BudgetStatus,
    Revision,
    RevisionStatus,
    Transfer,
    TransferStatus,
)
from budget_ledger.kernel.events import Event


def _add(a: str, b: str) -> str:
    return str(Decimal(str(a)) + Decimal(str(b)))


class BudgetCodeRegistry:
    """
    Main budget code projection - current state of all codes

    Built from events on budget_code streams. Deleted codes stay in the
    raw dict (flagged) so the stream can still be folded, but every query
    skips them.

    Query methods: get, get_model, get_by_code, find_allocation, list_codes
    """

    def __init__(self) -> None:
        self.codes: dict[str, dict] = {}
        self._by_code: dict[str, str] = {}
        self._allocation_index: dict[str, str] = {}
        self._handlers = {
            "BudgetCodeCreated": self._apply_budget_code_created,
            "BudgetCodeApprovalAdvanced": self._apply_budget_code_approval_advanced,
            "BudgetCodeActivated": self._apply_budget_code_activated,
            "BudgetCodeRejected": self._apply_budget_code_rejected,
            "BudgetCodeUpdated": self._apply_budget_code_updated,
            "BudgetCodeSuspended": self._apply_budget_code_suspended,
            "BudgetCodeReactivated": self._apply_budget_code_reactivated,
            "BudgetCodeExpired": self._apply_budget_code_expired,
            "BudgetCodeDeleted": self._apply_budget_code_deleted,
            "FundsReserved": self._apply_funds_reserved,
            "AllocationSpent": self._apply_allocation_spent,
            "AllocationReleased": self._apply_allocation_released,
            "BudgetRevised": self._apply_budget_revised,
            "TransferDebited": self._apply_transfer_debited,
            "TransferCredited": self._apply_transfer_credited,
        }

    @classmethod
    def from_events(cls, events: list[Event]) -> "BudgetCodeRegistry":
        registry = cls()
        for event in events:
            registry.apply_event(event)
        return registry

    def apply_event(self, event: Event) -> None:
        """
        Apply an event to update the projection

        Args:
            event: Event to apply
        """
        handler = self._handlers.get(event.event_type)
        if handler is None:
            return  # claim events live on their own streams
        handler(event)
        budget_code_id = event.payload.get("budget_code_id")
        if budget_code_id in self.codes:
            self.codes[budget_code_id]["version"] = event.version

    def _apply_budget_code_created(self, event: Event) -> None:
        payload = event.payload
        budget_code_id = payload["budget_code_id"]

        self.codes[budget_code_id] = {
            "budget_code_id": budget_code_id,
            "code": payload["code"],
            "name": payload["name"],
            "department": payload["department"],
            "budget_type": payload["budget_type"],
            "budget_period": payload["budget_period"],
            "fiscal_year": payload["fiscal_year"],
            "budget": payload["budget"],
            "used": "0",
            "active": False,
            "status": payload["status"],
            "start_date": payload["start_date"],
            "end_date": payload["end_date"],
            "budget_owner": payload["budget_owner"],
            "description": payload["description"],
            "chain_id": payload["chain_id"],
            "budget_history": [],
            "allocations": {},
            "created_at": payload["created_at"],
            "created_by": payload["created_by"],
            "activated_at": None,
            "rejection_reason": None,
            "suspension_reason": None,
            "deleted": False,
            "version": event.version,
        }
        self._by_code[payload["code"]] = budget_code_id

    def _apply_budget_code_approval_advanced(self, event: Event) -> None:
        code = self.codes.get(event.payload["budget_code_id"])
        if code:
            code["status"] = event.payload["status"]

    def _apply_budget_code_activated(self, event: Event) -> None:
        code = self.codes.get(event.payload["budget_code_id"])
        if code:
            code["status"] = BudgetStatus.ACTIVE.value
            code["active"] = True
            code["activated_at"] = event.payload["activated_at"]

    def _apply_budget_code_rejected(self, event: Event) -> None:
        code = self.codes.get(event.payload["budget_code_id"])
        if code:
            code["status"] = BudgetStatus.REJECTED.value
            code["active"] = False
            code["rejection_reason"] = event.payload["reason"]

    def _apply_budget_code_updated(self, event: Event) -> None:
        code = self.codes.get(event.payload["budget_code_id"])
        if code:
            code.update(event.payload["changes"])

    def _apply_budget_code_suspended(self, event: Event) -> None:
        code = self.codes.get(event.payload["budget_code_id"])
        if code:
            code["status"] = BudgetStatus.SUSPENDED.value
            code["active"] = False
            code["suspension_reason"] = event.payload["reason"]

    def _apply_budget_code_reactivated(self, event: Event) -> None:
        code = self.codes.get(event.payload["budget_code_id"])
        if code:
            code["status"] = BudgetStatus.ACTIVE.value
            code["active"] = True
            code["suspension_reason"] = None

    def _apply_budget_code_expired(self, event: Event) -> None:
        code = self.codes.get(event.payload["budget_code_id"])
        if code:
            code["status"] = BudgetStatus.EXPIRED.value
            code["active"] = False

    def _apply_budget_code_deleted(self, event: Event) -> None:
        code = self.codes.get(event.payload["budget_code_id"])
        if code:
            code["deleted"] = True
            code["active"] = False
            self._by_code.pop(code["code"], None)

    def _apply_funds_reserved(self, event: Event) -> None:
        payload = event.payload
        code = self.codes.get(payload["budget_code_id"])
        if code is None:
            return
        code["allocations"][payload["allocation_id"]] = {
            "allocation_id": payload["allocation_id"],
            "requisition_id": payload["requisition_id"],
            "amount": payload["amount"],
            "allocated_date": payload["allocated_date"],
            "status": AllocationStatus.ALLOCATED.value,
            "spent_date": None,
            "released_date": None,
            "release_reason": None,
        }
        self._allocation_index[payload["allocation_id"]] = payload["budget_code_id"]

    def _apply_allocation_spent(self, event: Event) -> None:
        payload = event.payload
        code = self.codes.get(payload["budget_code_id"])
        if code is None:
            return
        allocation = code["allocations"][payload["allocation_id"]]
        allocation["status"] = AllocationStatus.SPENT.value
        allocation["spent_date"] = payload["spent_date"]
        code["used"] = _add(code["used"], payload["amount"])

    def _apply_allocation_released(self, event: Event) -> None:
        payload = event.payload
        code = self.codes.get(payload["budget_code_id"])
        if code is None:
            return
        allocation = code["allocations"][payload["allocation_id"]]
        allocation["status"] = AllocationStatus.RELEASED.value
        allocation["released_date"] = payload["released_date"]
        allocation["release_reason"] = payload["reason"]

    def _record_budget_change(
        self, code: dict, payload: dict, new_budget: str, source: str, reference_id: str
    ) -> None:
        code["budget_history"].append(
            {
                "previous_budget": code["budget"],
                "new_budget": new_budget,
                "change_amount": str(Decimal(new_budget) - Decimal(str(code["budget"]))),
                "reason": payload["reason"],
                "changed_by": payload["changed_by"],
                "change_date": payload.get("revised_at") or payload["executed_at"],
                "source": source,
                "reference_id": reference_id,
            }
        )
        code["budget"] = new_budget

    def _apply_budget_revised(self, event: Event) -> None:
        payload = event.payload
        code = self.codes.get(payload["budget_code_id"])
        if code:
            self._record_budget_change(
                code, payload, payload["new_budget"], "revision", payload["revision_id"]
            )

    def _apply_transfer_debited(self, event: Event) -> None:
        payload = event.payload
        code = self.codes.get(payload["budget_code_id"])
        if code:
            self._record_budget_change(
                code, payload, payload["new_budget"], "transfer_out", payload["transfer_id"]
            )

    def _apply_transfer_credited(self, event: Event) -> None:
        payload = event.payload
        code = self.codes.get(payload["budget_code_id"])
        if code:
            self._record_budget_change(
                code, payload, payload["new_budget"], "transfer_in", payload["transfer_id"]
            )

    # ========== Query Methods ==========

    def get(self, budget_code_id: str) -> dict | None:
        """Get a code dict by id (None if unknown or deleted)"""
        code = self.codes.get(budget_code_id)
        if code is None or code["deleted"]:
            return None
        return code

    def get_model(self, budget_code_id: str) -> BudgetCode | None:
        code = self.get(budget_code_id)
        return BudgetCode.model_validate(code) if code else None

    def get_by_code(self, code: str) -> dict | None:
        budget_code_id = self._by_code.get(code.upper())
        return self.get(budget_code_id) if budget_code_id else None

    def find_allocation(self, allocation_id: str) -> str | None:
        """Budget code id owning an allocation"""
        return self._allocation_index.get(allocation_id)

    def list_codes(
        self,
        status: str | None = None,
        department: str | None = None,
        fiscal_year: int | None = None,
        active: bool | None = None,
    ) -> list[dict]:
        """List codes matching every given filter, ordered by code"""
        result = []
        for code in self.codes.values():
            if code["deleted"]:
                continue
            if status is not None and code["status"] != status:
                continue
            if department is not None and code["department"] != department:
                continue
            if fiscal_year is not None and code["fiscal_year"] != fiscal_year:
                continue
            if active is not None and code["active"] != active:
                continue
            result.append(code)
        return sorted(result, key=lambda c: c["code"])

    def list_active(self) -> list[dict]:
        return self.list_codes(status=BudgetStatus.ACTIVE.value)


class RevisionRegistry:
    """
    Budget revision requests

    Built from events: RevisionRequested, RevisionApproved, RevisionRejected

    Query methods: get, get_model, list_for_code, list_pending
    """

    def __init__(self) -> None:
        self.revisions: dict[str, dict] = {}

    @classmethod
    def from_events(cls, events: list[Event]) -> "RevisionRegistry":
        registry = cls()
        for event in events:
            registry.apply_event(event)
        return registry

    def apply_event(self, event: Event) -> None:
        payload = event.payload
        if event.event_type == "RevisionRequested":
            self.revisions[payload["revision_id"]] = {
                "revision_id": payload["revision_id"],
                "budget_code_id": payload["budget_code_id"],
                "previous_budget": payload["previous_budget"],
                "requested_budget": payload["requested_budget"],
                "change_amount": payload["change_amount"],
                "reason": payload["reason"],
                "requested_by": payload["requested_by"],
                "request_date": payload["request_date"],
                "status": RevisionStatus.PENDING.value,
                "chain_id": payload["chain_id"],
                "approval_date": None,
                "rejection_reason": None,
                "version": event.version,
            }
        elif event.event_type == "RevisionApproved":
            revision = self.revisions.get(payload["revision_id"])
            if revision:
                revision["status"] = RevisionStatus.APPROVED.value
                revision["approval_date"] = payload["approval_date"]
                revision["version"] = event.version
        elif event.event_type == "RevisionRejected":
            revision = self.revisions.get(payload["revision_id"])
            if revision:
                revision["status"] = RevisionStatus.REJECTED.value
                revision["rejection_reason"] = payload["reason"]
                revision["version"] = event.version

    # ========== Query Methods ==========

    def get(self, revision_id: str) -> dict | None:
        return self.revisions.get(revision_id)

    def get_model(self, revision_id: str) -> Revision | None:
        revision = self.revisions.get(revision_id)
        return Revision.model_validate(revision) if revision else None

    def list_for_code(self, budget_code_id: str) -> list[dict]:
        return sorted(
            (r for r in self.revisions.values() if r["budget_code_id"] == budget_code_id),
            key=lambda r: r["request_date"],
        )

    def list_pending(self) -> list[dict]:
        return sorted(
            (r for r in self.revisions.values() if r["status"] == RevisionStatus.PENDING.value),
            key=lambda r: r["request_date"],
        )


class TransferRegistry:
    """
    Budget transfer requests

    Built from events: TransferRequested, TransferExecuted,
                       TransferRejected, TransferCancelled

    Query methods: get, get_model, list_transfers, list_pending, statistics
    """

    def __init__(self) -> None:
        self.transfers: dict[str, dict] = {}

    @classmethod
    def from_events(cls, events: list[Event]) -> "TransferRegistry":
        registry = cls()
        for event in events:
            registry.apply_event(event)
        return registry

    def apply_event(self, event: Event) -> None:
        payload = event.payload
        if event.event_type == "TransferRequested":
            self.transfers[payload["transfer_id"]] = {
                "transfer_id": payload["transfer_id"],
                "from_budget_code_id": payload["from_budget_code_id"],
                "to_budget_code_id": payload["to_budget_code_id"],
                "amount": payload["amount"],
                "reason": payload["reason"],
                "requested_by": payload["requested_by"],
                "requested_at": payload["requested_at"],
                "status": TransferStatus.PENDING.value,
                "chain_id": payload["chain_id"],
                "executed_date": None,
                "rejection_reason": None,
                "cancellation_reason": None,
                "version": event.version,
            }
            return

        transfer = self.transfers.get(payload.get("transfer_id", ""))
        if transfer is None:
            return
        if event.event_type == "TransferExecuted":
            transfer["status"] = TransferStatus.APPROVED.value
            transfer["executed_date"] = payload["executed_date"]
        elif event.event_type == "TransferRejected":
            transfer["status"] = TransferStatus.REJECTED.value
            transfer["rejection_reason"] = payload["reason"]
        elif event.event_type == "TransferCancelled":
            transfer["status"] = TransferStatus.CANCELLED.value
            transfer["cancellation_reason"] = payload["reason"]
        else:
            return
        transfer["version"] = event.version

    # ========== Query Methods ==========

    def get(self, transfer_id: str) -> dict | None:
        return self.transfers.get(transfer_id)

    def get_model(self, transfer_id: str) -> Transfer | None:
        transfer = self.transfers.get(transfer_id)
        return Transfer.model_validate(transfer) if transfer else None

    def list_transfers(
        self, status: str | None = None, budget_code_id: str | None = None
    ) -> list[dict]:
        result = []
        for transfer in self.transfers.values():
            if status is not None and transfer["status"] != status:
                continue
            if budget_code_id is not None and budget_code_id not in (
                transfer["from_budget_code_id"],
                transfer["to_budget_code_id"],
            ):
                continue
            result.append(transfer)
        return sorted(result, key=lambda t: t["requested_at"], reverse=True)

    def list_pending(self) -> list[dict]:
        return self.list_transfers(status=TransferStatus.PENDING.value)

    def statistics(self) -> dict:
        """Counts per status and the total amount actually moved"""
        counts = {status.value: 0 for status in TransferStatus}
        total_transferred = Decimal("0")
        for transfer in self.transfers.values():
            counts[transfer["status"]] += 1
            if transfer["status"] == TransferStatus.APPROVED.value:
                total_transferred += Decimal(str(transfer["amount"]))
        return {
            "total": len(self.transfers),
            **counts,
            "total_amount_transferred": str(total_transferred),
        }

