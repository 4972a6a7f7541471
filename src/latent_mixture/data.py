"""
Loading of rectangular observation tables.

Input files hold one observation per row, no header, with the column order
fixed by a declared variable list. Fields are separated by whitespace (free
format) or by an explicit delimiter, and a single token (a period by default)
marks a missing value. Malformed input is rejected with ``DataFormatError``
before any estimation starts.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from .config import get_settings
from .exceptions import DataFormatError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Dataset:
    """Immutable table of observations with NaN for missing values."""
    values: np.ndarray
    variables: tuple
    category_labels: dict = field(default_factory=dict)
    row_ids: Optional[np.ndarray] = None
    missing_token: str = "."

    def __post_init__(self):
        values = np.array(self.values, dtype=float, copy=True)
        if values.ndim != 2:
            raise DataFormatError("Observation table must be two-dimensional")
        if values.shape[1] != len(self.variables):
            raise DataFormatError(
                f"Table has {values.shape[1]} columns but {len(self.variables)} variables were declared"
            )
        values.setflags(write=False)
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "variables", tuple(self.variables))
        row_ids = np.arange(values.shape[0]) if self.row_ids is None else np.array(self.row_ids, copy=True)
        row_ids.setflags(write=False)
        object.__setattr__(self, "row_ids", row_ids)

    @property
    def n_obs(self) -> int:
        return self.values.shape[0]

    @property
    def n_variables(self) -> int:
        return self.values.shape[1]

    @property
    def missing_mask(self) -> np.ndarray:
        """Boolean (n_obs, n_variables) array, True where a value is missing."""
        return np.isnan(self.values)

    def column(self, name: str) -> np.ndarray:
        return self.values[:, self._index(name)]

    def n_categories(self, name: str) -> int:
        if name not in self.category_labels:
            raise KeyError(f"'{name}' is not a categorical variable")
        return len(self.category_labels[name])

    def select(self, names: Sequence[str]) -> np.ndarray:
        """Return a (n_obs, len(names)) array of the requested columns."""
        return self.values[:, [self._index(n) for n in names]]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, columns=list(self.variables), index=self.row_ids)

    def _index(self, name: str) -> int:
        try:
            return self.variables.index(name)
        except ValueError:
            raise KeyError(f"Unknown variable '{name}'") from None

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, variables: Optional[Sequence[str]] = None,
                   categorical: Sequence[str] = (), missing_token: str = ".") -> "Dataset":
        """
        Build a Dataset from an in-memory DataFrame.

        Args:
            frame: Table with one row per observation
            variables: Columns to keep, in order. Defaults to all columns.
            categorical: Columns recoded to consecutive category codes
            missing_token: String token treated as missing in object columns

        Returns:
            Dataset with numeric values and NaN for missing entries
        """
        variables = list(frame.columns) if variables is None else list(variables)
        unknown = [v for v in variables if v not in frame.columns]
        if unknown:
            raise DataFormatError(f"Columns not found in data: {unknown}")
        numeric = _coerce_numeric(frame[variables].reset_index(drop=True), missing_token, "frame")
        return _finalize(numeric, variables, categorical, missing_token)


def load_dataset(path: Union[str, Path], variables: Sequence[str], missing: Optional[str] = None,
                 delimiter: Optional[str] = None, categorical: Sequence[str] = ()) -> Dataset:
    """
    Read a headerless observation table.

    Args:
        path: File to read
        variables: Declared variable names, one per column
        missing: Token denoting a missing value (Settings default if None)
        delimiter: Field delimiter, or None for free (whitespace) format
        categorical: Variables recoded to category codes 0..C-1

    Returns:
        Dataset holding the observations

    Raises:
        DataFormatError: on empty input, a wrong column count, or non-numeric fields
    """
    path = Path(path)
    missing = missing or get_settings().missing_token
    sep = r"\s+" if delimiter is None else delimiter
    try:
        raw = pd.read_csv(path, sep=sep, header=None, dtype=str,
                          keep_default_na=False, na_filter=False, skip_blank_lines=True)
    except pd.errors.EmptyDataError as e:
        raise DataFormatError(f"{path} contains no observations") from e
    except pd.errors.ParserError as e:
        raise DataFormatError(f"Malformed row in {path}: {e}") from e

    if raw.shape[1] != len(variables):
        raise DataFormatError(
            f"{path} has {raw.shape[1]} columns but {len(variables)} variables were declared"
        )

    short_rows = (raw.isna() | (raw == "")).any(axis=1)
    if short_rows.any():
        first = int(np.flatnonzero(short_rows.to_numpy())[0]) + 1
        raise DataFormatError(f"Row {first} of {path} has fewer than {len(variables)} fields")

    raw.columns = list(variables)
    numeric = _coerce_numeric(raw, missing, str(path))
    logger.info(f"Loaded {len(numeric)} observations on {len(variables)} variables from {path}")
    return _finalize(numeric, list(variables), categorical, missing)


def _coerce_numeric(frame: pd.DataFrame, missing_token: str, source: str) -> pd.DataFrame:
    """Convert every column to float, treating the missing token as NaN."""
    out = {}
    for name in frame.columns:
        column = frame[name]
        if not pd.api.types.is_numeric_dtype(column):
            stripped = column.astype(str).str.strip()
            is_missing = (stripped == missing_token) | column.isna()
            converted = pd.to_numeric(stripped.where(~is_missing), errors="coerce")
            bad = converted.isna() & ~is_missing
            if bad.any():
                row = int(np.flatnonzero(bad.to_numpy())[0])
                raise DataFormatError(
                    f"Non-numeric value '{column.iloc[row]}' for '{name}' in row {row + 1} of {source}"
                )
            out[name] = converted.astype(float)
        else:
            try:
                out[name] = column.astype(float)
            except (TypeError, ValueError) as e:
                raise DataFormatError(f"Column '{name}' of {source} is not numeric") from e
    return pd.DataFrame(out)


def _finalize(numeric: pd.DataFrame, variables: list, categorical: Sequence[str],
              missing_token: str) -> Dataset:
    unknown = [c for c in categorical if c not in variables]
    if unknown:
        raise DataFormatError(f"Categorical variables not declared: {unknown}")

    all_missing = numeric.isna().all(axis=1).to_numpy()
    if all_missing.all():
        raise DataFormatError("Every observation is missing on all variables")
    if all_missing.any():
        logger.warning(
            f"{int(all_missing.sum())} observations are missing on all variables and were excluded"
        )
    numeric = numeric.loc[~all_missing].copy()
    empty = [name for name in variables if numeric[name].isna().all()]
    if empty:
        raise DataFormatError(f"No observed values for variables: {empty}")
    row_ids = np.flatnonzero(~all_missing)

    category_labels = {}
    for name in categorical:
        observed = numeric[name].dropna()
        labels = tuple(np.sort(observed.unique()))
        codes = {label: code for code, label in enumerate(labels)}
        numeric[name] = numeric[name].map(codes).astype(float)
        category_labels[name] = labels

    return Dataset(
        values=numeric.to_numpy(dtype=float),
        variables=tuple(variables),
        category_labels=category_labels,
        row_ids=row_ids,
        missing_token=missing_token,
    )
