"""Derived state: asset balances and goal progress.

Values here are computed from the transaction history. They are kept up to
date by explicit calls from whoever mutates transactions; the cache does not
subscribe to the change bus, so a sync batch can apply many transactions and
reconcile once at the end.

Asset balance invariant::

    balance == opening_balance
               + sum(signed transaction amounts through the asset)
               + sum(transfers into the asset) - sum(transfers out of it)

"""
import decimal
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import records
from .store import RecordStore
from ..status import status

ZERO = decimal.Decimal('0')


@dataclass
class GoalProgress:
    """Spending against a goal's target."""
    goal_id: int
    category_id: int
    spent: decimal.Decimal
    target: decimal.Decimal
    ratio: decimal.Decimal  # spent / target, 0 when the target is 0
    completed: bool

    @property
    def remaining(self) -> decimal.Decimal:
        return self.target - self.spent


class DerivedStateCache:
    """Keeps asset balances and goal progress consistent with transactions.

    Args:
        store: The record store to read from and write corrected balances to.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store
        self._goal_cache: Dict[int, GoalProgress] = {}

    def _history_sum(self, asset_id: str) -> decimal.Decimal:
        total = ZERO
        for tx in self.store.list(records.Kind.Transactions):
            if records.asset_for(tx) == asset_id:
                total += records.signed_amount(tx)
        for transfer in self.store.list(records.Kind.Transfers):
            total += records.transfer_effect(transfer, asset_id)
        return total

    def _adjust(self, asset_id: str, delta: decimal.Decimal) -> None:
        asset = self.store.get(records.Kind.Assets, asset_id)
        if asset is None:
            logging.warning(f'Asset "{asset_id}" not found, balance not adjusted')
            return
        balance = (asset.get('balance') or ZERO) + delta
        self.store.update(records.Kind.Assets, asset_id, {'balance': balance})

    def apply_transaction(self, tx: Dict[str, Any]) -> Optional[str]:
        """Add the effect of a new transaction to its asset.

        Income increases and expenses decrease the balance of the asset mapped
        from the transaction's payment method.

        Returns:
            The id of the adjusted asset, or None if the transaction touches no asset.
        """
        self.invalidate_goals()
        asset_id = records.asset_for(tx)
        if asset_id is None:
            return None
        self._adjust(asset_id, records.signed_amount(tx))
        return asset_id

    def reverse_transaction(self, tx: Dict[str, Any]) -> Optional[str]:
        """Remove the effect of a transaction from its asset."""
        self.invalidate_goals()
        asset_id = records.asset_for(tx)
        if asset_id is None:
            return None
        self._adjust(asset_id, -records.signed_amount(tx))
        return asset_id

    def transaction_changed(self, before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> List[str]:
        """Reverse the old effect of a transaction, apply the new one, and verify.

        Pass ``before=None`` for a created transaction and ``after=None`` for a
        deleted one. Every touched asset is then checked against the full
        history and corrected if the two disagree.

        Returns:
            Ids of the touched assets.
        """
        touched = []
        if before is not None:
            touched.append(self.reverse_transaction(before))
        if after is not None:
            touched.append(self.apply_transaction(after))

        touched = list(dict.fromkeys(t for t in touched if t is not None))
        for asset_id in touched:
            self.recompute_asset(asset_id)
        return touched

    def transfer_changed(self, before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> List[str]:
        """Move a transfer's amount between its assets, then verify them.

        Pass ``before=None`` for a created transfer and ``after=None`` for a
        deleted one.

        Returns:
            Ids of the touched assets.
        """
        touched = []
        for transfer, sign in ((before, -1), (after, 1)):
            if transfer is None:
                continue
            for asset_id in (transfer.get('source_id'), transfer.get('destination_id')):
                self._adjust(asset_id, sign * records.transfer_effect(transfer, asset_id))
                touched.append(asset_id)

        touched = list(dict.fromkeys(touched))
        for asset_id in touched:
            self.recompute_asset(asset_id)
        return touched

    def recompute_asset(self, asset_id: str) -> Optional[decimal.Decimal]:
        """Recompute an asset balance from its transaction and transfer history.

        An asset without an ``opening_balance`` gets one derived from its current
        balance, so balances that came from elsewhere are not lost.

        Returns:
            The correct balance, or None if the asset does not exist.
        """
        asset = self.store.get(records.Kind.Assets, asset_id)
        if asset is None:
            return None

        tx_sum = self._history_sum(asset['id'])
        balance = asset.get('balance')
        opening = asset.get('opening_balance')

        if opening is None:
            opening = (balance if balance is not None else ZERO) - tx_sum
            expected = opening + tx_sum
            self.store.update(records.Kind.Assets, asset['id'], {'balance': expected, 'opening_balance': opening})
            return expected

        expected = opening + tx_sum
        if balance != expected:
            logging.warning(f'Asset "{asset["id"]}" balance {balance} disagrees with history, corrected to {expected}')
            self.store.update(records.Kind.Assets, asset['id'], {'balance': expected})
        return expected

    def reconcile(self) -> List[str]:
        """Recompute every asset balance.

        Returns:
            Ids of the assets whose stored balance was corrected.
        """
        self.invalidate_goals()
        corrected = []
        for asset in self.store.list(records.Kind.Assets):
            before = asset.get('balance')
            has_opening = asset.get('opening_balance') is not None
            after = self.recompute_asset(asset['id'])
            if has_opening and before != after:
                corrected.append(asset['id'])
        if corrected:
            logging.info(f'Reconciled asset balances: {corrected}')
        return corrected

    def set_asset_balance(self, asset_id: str, balance: Any) -> Dict[str, Any]:
        """Set an asset balance by hand.

        The difference to the transaction history is stored as the asset's
        opening balance so later recomputation keeps the new value.

        Raises:
            status.RecordNotFoundException: If the asset does not exist.
            status.ValidationException: If balance is not a number.
        """
        balance = records.to_decimal(balance, signed=True)
        asset = self.store.get(records.Kind.Assets, asset_id)
        if asset is None:
            raise status.RecordNotFoundException(f'Asset "{asset_id}" does not exist.')

        opening = balance - self._history_sum(asset['id'])
        return self.store.update(
            records.Kind.Assets, asset['id'], {'balance': balance, 'opening_balance': opening}
        )

    def goal_progress(self, goal_id: Any) -> Optional[GoalProgress]:
        """Return spending progress for a goal, or None if the goal does not exist.

        Spending is the sum of expense transactions in the goal's category.
        """
        goal = self.store.get(records.Kind.Goals, goal_id)
        if goal is None:
            return None
        if goal['id'] in self._goal_cache:
            return self._goal_cache[goal['id']]

        spent = ZERO
        for tx in self.store.list(records.Kind.Transactions):
            if tx.get('kind') == records.EntryKind.Expense and tx.get('category_id') == goal['category_id']:
                spent += tx['amount']

        target = goal.get('target_amount') or ZERO
        progress = GoalProgress(
            goal_id=goal['id'],
            category_id=goal['category_id'],
            spent=spent,
            target=target,
            ratio=(spent / target) if target else ZERO,
            completed=bool(goal.get('completed')),
        )
        self._goal_cache[goal['id']] = progress
        return progress

    def invalidate_goals(self) -> None:
        self._goal_cache.clear()
