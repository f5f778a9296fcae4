"""
CSV loading utilities for item response data.
"""

from pathlib import Path

import pandas as pd

from mirt_analysis.core.data_models import ResponseMatrix
from mirt_analysis.core.errors import InputError


def load_csv_to_response_matrix(
    path: Path,
    id_column: str | None = None,
    group_column: str | None = None,
) -> tuple[list[str], ResponseMatrix]:
    """Load a CSV file with one column per item into a ResponseMatrix.

    Empty cells are missing responses. Each item's observed codes are
    recoded to consecutive categories starting at 0.

    Returns:
        Tuple of (respondent_ids, ResponseMatrix). Respondent ids are the
        row numbers when id_column is not given.

    Raises:
        InputError: If a named column is absent or an item is not numeric.
    """
    df = pd.read_csv(path)

    for column in (id_column, group_column):
        if column is not None and column not in df.columns:
            raise InputError(f"CSV must have '{column}' column")

    if id_column is not None:
        respondent_ids: list[str] = df[id_column].astype(str).tolist()
    else:
        respondent_ids = [str(i) for i in range(len(df))]

    groups = None
    if group_column is not None:
        groups = df[group_column].astype(str).to_numpy()

    item_columns = [
        c for c in df.columns if c not in (id_column, group_column)
    ]
    items = df[item_columns].apply(pd.to_numeric, errors="coerce")
    non_numeric = items.isna() & df[item_columns].notna()
    if non_numeric.any().any():
        bad = [c for c in item_columns if non_numeric[c].any()]
        raise InputError(f"Non-numeric responses in columns: {bad}")

    return respondent_ids, ResponseMatrix.from_array(
        items.to_numpy(dtype=float),
        groups=groups,
        item_names=tuple(str(c) for c in item_columns),
    )
