"""Read views over the record store.

This module turns store collections into pandas DataFrames for display:
transactions in most-recent-first order with category names resolved, per
category totals, assets, transfers between assets, and goals with their
progress. Amount columns hold :class:`decimal.Decimal` values (object dtype)
so totals are exact.
"""
import decimal
import logging
from typing import Optional

import pandas as pd

from ..core import records
from ..core.derived import DerivedStateCache
from ..core.store import RecordStore

ZERO = decimal.Decimal('0')

TRANSACTION_COLUMNS = [
    'id',
    'occurred_on',
    'category_id',
    'category',
    'kind',
    'amount',
    'signed_amount',
    'description',
    'asset',
    'created_at',
]

TOTALS_COLUMNS = ['category_id', 'category', 'total', 'count']
ASSET_COLUMNS = ['id', 'name', 'balance', 'opening_balance', 'color']
TRANSFER_COLUMNS = [
    'id',
    'occurred_on',
    'source_id',
    'source',
    'destination_id',
    'destination',
    'amount',
    'description',
    'created_at',
]
GOAL_COLUMNS = ['id', 'name', 'category_id', 'category', 'target_amount', 'spent', 'remaining', 'ratio', 'completed']


def _decimal_sum(series: pd.Series) -> decimal.Decimal:
    return sum(series, ZERO)


def _category_names(store: RecordStore) -> dict:
    return {c['id']: c.get('name') or records.UNCATEGORIZED for c in store.list(records.Kind.Categories)}


def _conform_period(df: pd.DataFrame, yearmonth: str, span: int) -> pd.DataFrame:
    """Filter DataFrame to a specified period range.

    Selects rows where 'occurred_on' falls within the span of months starting at yearmonth.

    Args:
        df (pd.DataFrame): DataFrame with an 'occurred_on' column of ISO date strings.
        yearmonth (str): Starting year-month in 'YYYY-MM' format.
        span (int): Number of months to include.

    Returns:
        pd.DataFrame: Filtered DataFrame within the specified period.
    """
    start_period = pd.Period(yearmonth, freq='M')
    target_periods = [start_period + i for i in range(span)]
    dates = pd.to_datetime(df['occurred_on'], format='%Y-%m-%d', errors='coerce')
    return df[dates.dt.to_period('M').isin(target_periods)]


def transactions_frame(store: RecordStore) -> pd.DataFrame:
    """Return all transactions, most recent first.

    Categories that no longer exist are shown as "Uncategorized".

    Args:
        store: The record store.

    Returns:
        pd.DataFrame: One row per transaction with TRANSACTION_COLUMNS.
    """
    names = _category_names(store)
    assets = {a['id']: a.get('name', '') for a in store.list(records.Kind.Assets)}

    rows = []
    for tx in store.list(records.Kind.Transactions):
        asset_id = records.asset_for(tx)
        rows.append({
            'id': tx['id'],
            'occurred_on': tx.get('occurred_on', ''),
            'category_id': tx.get('category_id'),
            'category': names.get(tx.get('category_id'), records.UNCATEGORIZED),
            'kind': tx.get('kind'),
            'amount': tx.get('amount', ZERO),
            'signed_amount': records.signed_amount(tx),
            'description': tx.get('description') or '',
            'asset': assets.get(asset_id, '') if asset_id else '',
            'created_at': tx.get('created_at') or '',
        })

    if not rows:
        return pd.DataFrame(columns=TRANSACTION_COLUMNS)

    df = pd.DataFrame(rows, columns=TRANSACTION_COLUMNS)
    df = df.sort_values(by=['occurred_on', 'created_at', 'id'], ascending=False).reset_index(drop=True)
    return df


def category_totals(store: RecordStore, kind: str = 'expense', yearmonth: Optional[str] = None,
                    span: int = 1) -> pd.DataFrame:
    """Sum transaction amounts per category.

    Args:
        store: The record store.
        kind: 'income' or 'expense'.
        yearmonth: Optional starting 'YYYY-MM' period. All transactions when omitted.
        span: Number of months to include, starting at yearmonth.

    Returns:
        pd.DataFrame: TOTALS_COLUMNS, largest total first.
    """
    df = transactions_frame(store)
    if df.empty:
        return pd.DataFrame(columns=TOTALS_COLUMNS)

    df = df[df['kind'] == kind]
    if yearmonth:
        df = _conform_period(df, yearmonth, span)
    if df.empty:
        logging.debug(f'No {kind} transactions to total.')
        return pd.DataFrame(columns=TOTALS_COLUMNS)

    # Dangling ids all fall under one "Uncategorized" row
    df = df.assign(
        category_id=df['category_id'].astype(object).where(df['category'] != records.UNCATEGORIZED, None)
    )
    grouped = df.groupby('category', sort=False, dropna=False)
    out = pd.DataFrame({
        'category_id': grouped['category_id'].first(),
        'total': grouped['amount'].agg(_decimal_sum),
        'count': grouped['amount'].count(),
    }).reset_index()

    out = out[TOTALS_COLUMNS]
    out = out.sort_values(by='total', ascending=False, key=lambda s: s.map(float)).reset_index(drop=True)
    return out


def assets_frame(store: RecordStore) -> pd.DataFrame:
    """Return all assets ordered by id.

    Returns:
        pd.DataFrame: ASSET_COLUMNS.
    """
    items = store.list(records.Kind.Assets)
    if not items:
        return pd.DataFrame(columns=ASSET_COLUMNS)

    df = pd.DataFrame([{c: a.get(c) for c in ASSET_COLUMNS} for a in items], columns=ASSET_COLUMNS)
    df['balance'] = df['balance'].apply(lambda v: v if v is not None else ZERO)
    df['opening_balance'] = df['opening_balance'].apply(lambda v: v if v is not None else ZERO)
    return df.sort_values(by='id', key=lambda s: s.map(_id_sort_key)).reset_index(drop=True)


def transfers_frame(store: RecordStore, asset_id: Optional[str] = None) -> pd.DataFrame:
    """Return asset transfers, most recent first.

    Args:
        store: The record store.
        asset_id: Only include transfers into or out of this asset.

    Returns:
        pd.DataFrame: TRANSFER_COLUMNS. Assets that no longer exist have an empty name.
    """
    assets = {a['id']: a.get('name', '') for a in store.list(records.Kind.Assets)}
    rows = []
    for transfer in store.list(records.Kind.Transfers):
        if asset_id is not None and asset_id not in (transfer.get('source_id'), transfer.get('destination_id')):
            continue
        rows.append({
            'id': transfer['id'],
            'occurred_on': transfer.get('occurred_on', ''),
            'source_id': transfer.get('source_id'),
            'source': assets.get(transfer.get('source_id'), ''),
            'destination_id': transfer.get('destination_id'),
            'destination': assets.get(transfer.get('destination_id'), ''),
            'amount': transfer.get('amount', ZERO),
            'description': transfer.get('description') or '',
            'created_at': transfer.get('created_at') or '',
        })

    if not rows:
        return pd.DataFrame(columns=TRANSFER_COLUMNS)

    df = pd.DataFrame(rows, columns=TRANSFER_COLUMNS)
    return df.sort_values(by=['occurred_on', 'created_at', 'id'], ascending=False).reset_index(drop=True)


def _id_sort_key(value: str):
    return (0, int(value), '') if str(value).isdigit() else (1, 0, str(value))


def goals_frame(store: RecordStore, derived: DerivedStateCache) -> pd.DataFrame:
    """Return every goal with its spending progress.

    Returns:
        pd.DataFrame: GOAL_COLUMNS.
    """
    names = _category_names(store)
    rows = []
    for goal in store.list(records.Kind.Goals):
        progress = derived.goal_progress(goal['id'])
        if progress is None:
            continue
        category = names.get(goal.get('category_id'), records.UNCATEGORIZED)
        rows.append({
            'id': goal['id'],
            'name': goal.get('name') or category,
            'category_id': goal.get('category_id'),
            'category': category,
            'target_amount': progress.target,
            'spent': progress.spent,
            'remaining': progress.remaining,
            'ratio': progress.ratio,
            'completed': progress.completed,
        })

    if not rows:
        return pd.DataFrame(columns=GOAL_COLUMNS)
    return pd.DataFrame(rows, columns=GOAL_COLUMNS).sort_values(by='id').reset_index(drop=True)
