"""
FirstMillion data package: read views.

- :mod:`FirstMillion.data.data` – pandas DataFrames of transactions, category totals, assets and goals.
"""
