"""
Approval Module Projections - Read model over every approval chain

ApprovalChainStore folds approval_chain streams into chain dicts shaped
exactly like ApprovalChain, so the same fold serves both the read side
(pending lists, history) and aggregate rehydration in the workflow engine.
"""

from budget_ledger.approval.models import ApprovalChain, StepStatus
from budget_ledger.kernel.events import Event


class ApprovalChainStore:
    """
    Current state of all approval chains

    Built from events: ApprovalChainCreated, ApprovalStepApproved,
                       ApprovalStepRejected, ApprovalChainCancelled

    Query methods: get, get_for_entity, pending_for, all_pending, history
    """

    def __init__(self) -> None:
        self.chains: dict[str, dict] = {}
        self._by_entity: dict[tuple[str, str], str] = {}

    @classmethod
    def from_events(cls, events: list[Event]) -> "ApprovalChainStore":
        store = cls()
        for event in events:
            store.apply_event(event)
        return store

    def apply_event(self, event: Event) -> None:
        """
        Apply an event to update the projection

        Args:
            event: Event to apply
        """
        if event.event_type == "ApprovalChainCreated":
            self._apply_chain_created(event)
        elif event.event_type == "ApprovalStepApproved":
            self._apply_step_approved(event)
        elif event.event_type == "ApprovalStepRejected":
            self._apply_step_rejected(event)
        elif event.event_type == "ApprovalChainCancelled":
            self._apply_chain_cancelled(event)

    def _apply_chain_created(self, event: Event) -> None:
        payload = event.payload
        chain_id = payload["chain_id"]

        self.chains[chain_id] = {
            "chain_id": chain_id,
            "entity_type": payload["entity_type"],
            "entity_id": payload["entity_id"],
            "context": payload.get("context", {}),
            "steps": [
                {
                    "level": spec["level"],
                    "approver": spec["approver"],
                    "status": StepStatus.PENDING.value,
                    "action_date": None,
                    "action_time": None,
                    "comments": None,
                }
                for spec in payload["steps"]
            ],
            "state": {"kind": "awaiting_level", "level": 1},
            "created_at": payload["created_at"],
            "created_by": payload["created_by"],
            "completed_at": None,
            "version": event.version,
        }
        self._by_entity[(payload["entity_type"], payload["entity_id"])] = chain_id

    def _record_step(self, chain: dict, payload: dict, status: StepStatus) -> None:
        step = chain["steps"][payload["level"] - 1]
        decided_at = event_time(payload["decided_at"])
        step["status"] = status.value
        step["action_date"] = decided_at[:10]
        step["action_time"] = decided_at[11:19]
        step["comments"] = payload.get("comments")

    def _apply_step_approved(self, event: Event) -> None:
        payload = event.payload
        chain = self.chains.get(payload["chain_id"])
        if chain is None:
            return

        self._record_step(chain, payload, StepStatus.APPROVED)
        if payload["next_level"] is None:
            chain["state"] = {"kind": "approved"}
            chain["completed_at"] = payload["decided_at"]
        else:
            chain["state"] = {"kind": "awaiting_level", "level": payload["next_level"]}
        chain["version"] = event.version

    def _apply_step_rejected(self, event: Event) -> None:
        payload = event.payload
        chain = self.chains.get(payload["chain_id"])
        if chain is None:
            return

        self._record_step(chain, payload, StepStatus.REJECTED)
        chain["state"] = {
            "kind": "rejected",
            "level": payload["level"],
            "reason": payload["comments"],
        }
        chain["completed_at"] = payload["decided_at"]
        chain["version"] = event.version

    def _apply_chain_cancelled(self, event: Event) -> None:
        payload = event.payload
        chain = self.chains.get(payload["chain_id"])
        if chain is None:
            return

        chain["state"] = {"kind": "rejected", "level": None, "reason": payload["reason"]}
        chain["completed_at"] = payload["cancelled_at"]
        chain["version"] = event.version

    # ========== Query Methods ==========

    def get(self, chain_id: str) -> dict | None:
        return self.chains.get(chain_id)

    def get_model(self, chain_id: str) -> ApprovalChain | None:
        chain = self.chains.get(chain_id)
        return ApprovalChain.model_validate(chain) if chain else None

    def get_for_entity(self, entity_type: str, entity_id: str) -> dict | None:
        chain_id = self._by_entity.get((entity_type, entity_id))
        return self.chains.get(chain_id) if chain_id else None

    def all_pending(self, entity_type: str | None = None) -> list[dict]:
        """Every chain still awaiting a decision, oldest first"""
        pending = [
            chain
            for chain in self.chains.values()
            if chain["state"]["kind"] == "awaiting_level"
            and (entity_type is None or chain["entity_type"] == entity_type)
        ]
        return sorted(pending, key=lambda c: c["created_at"])

    def pending_for(self, email: str, entity_type: str | None = None) -> list[dict]:
        """
        Chains whose current step belongs to this approver

        Email comparison is case-insensitive.
        """
        wanted = email.strip().lower()
        result = []
        for chain in self.all_pending(entity_type):
            step = chain["steps"][chain["state"]["level"] - 1]
            if step["approver"]["email"].strip().lower() == wanted:
                result.append(chain)
        return result

    def history(self, entity_type: str, entity_id: str) -> list[dict]:
        """
        Decided steps of the entity's chain, in level order

        Pending steps are included only while the chain is still open, so
        callers can show who is next.
        """
        chain = self.get_for_entity(entity_type, entity_id)
        if chain is None:
            return []
        open_chain = chain["state"]["kind"] == "awaiting_level"
        return [
            dict(step)
            for step in chain["steps"]
            if step["status"] != StepStatus.PENDING.value or open_chain
        ]


def event_time(value: str) -> str:
    """Normalise an ISO timestamp to 'YYYY-MM-DDTHH:MM:SS...' form"""
    return value.replace(" ", "T")
