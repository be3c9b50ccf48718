from __future__ import annotations

from typing import Any, Optional

from tradedesk.infrastructure.backend.base import Backend, BackendError
from tradedesk.infrastructure.logging.logging import get_logger
from tradedesk.models.account_models import GLOBAL_ENGINE_KEY, BalanceBucket, EngineMode, OperationResult
from tradedesk.services.errors import OperationRejected, ValidationFailure, rejection_message

log = get_logger("admin")

ADJUST_ACTIONS = ("add", "subtract")
UNAUTHORIZED = "Unauthorized: admin access required"


class AdminClient:
    """Admin-side balance adjustments and engine mode switches."""

    def __init__(self, backend: Backend, admin_id: Optional[str]) -> None:
        self._backend = backend
        self.admin_id = admin_id
        self._log = log.bind(admin_id=admin_id)

    def _require_admin_id(self) -> str:
        if not self.admin_id:
            raise ValidationFailure("Please sign in as an admin")
        return self.admin_id

    async def _require_admin(self) -> None:
        admin_id = self._require_admin_id()
        try:
            profile = await self._backend.select_one("profiles", {"id": admin_id}, columns="role")
        except BackendError as e:
            self._log.error("admin_lookup_failed", error=str(e))
            raise OperationRejected("Failed to verify admin access") from e
        if not profile or profile.get("role") != "admin":
            raise OperationRejected(UNAUTHORIZED)

    async def adjust_balance(self, user_id: str, bucket: Any, action: str, amount: float, reason: str) -> OperationResult:
        admin_id = self._require_admin_id()
        if not user_id:
            raise ValidationFailure("Please select a user")
        try:
            balance_type = BalanceBucket.parse(bucket)
        except ValueError as e:
            raise ValidationFailure(str(e)) from None
        if action not in ADJUST_ACTIONS:
            raise ValidationFailure("Action must be 'add' or 'subtract'")
        if amount is None or amount <= 0:
            raise ValidationFailure("Please enter a valid amount")
        if not reason or not reason.strip():
            raise ValidationFailure("Please provide a reason for this adjustment")

        try:
            payload = await self._backend.rpc(
                "admin_adjust_user_balance",
                {
                    "p_admin_id": admin_id,
                    "p_user_id": user_id,
                    "p_balance_type": balance_type.value,
                    "p_action": action,
                    "p_amount": amount,
                    "p_reason": reason.strip(),
                },
            )
        except BackendError as e:
            self._log.error("balance_adjust_failed", user_id=user_id, error=str(e))
            raise OperationRejected("Failed to adjust balance") from e
        result = OperationResult.from_payload(payload)
        if not result.success:
            raise OperationRejected(rejection_message(payload, "Failed to adjust balance"))
        self._log.info("balance_adjusted", user_id=user_id, bucket=balance_type.value, action=action, amount=amount)
        return result

    async def set_engine_mode(self, mode: EngineMode, user_id: Optional[str] = None) -> None:
        """Per-user override when `user_id` is given, otherwise the global setting."""
        try:
            mode = EngineMode(mode)
        except ValueError:
            raise ValidationFailure("Unknown trading engine") from None
        if not user_id and mode is EngineMode.DEFAULT:
            raise ValidationFailure("The global engine must be 'rising' or 'general'")
        await self._require_admin()
        try:
            if user_id:
                await self._upsert("user_trading_engines", {"user_id": user_id}, {"engine_type": mode.value})
            else:
                await self._upsert("admin_settings", {"key": GLOBAL_ENGINE_KEY}, {"value": mode.value})
        except BackendError as e:
            self._log.error("engine_mode_update_failed", user_id=user_id, error=str(e))
            raise OperationRejected("Failed to update trading engine") from e
        self._log.info("engine_mode_set", user_id=user_id, mode=mode.value)

    async def _upsert(self, table: str, key: dict, values: dict) -> None:
        rows = await self._backend.update(table, values, key)
        if not rows:
            await self._backend.insert(table, {**key, **values})
