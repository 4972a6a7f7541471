"""
Export utilities for fitted mixtures.

- ``posterior_frame``: original indicators, per-class posterior
  probabilities (CPROB1..CPROBK) and the most likely class (1-based)
- ``write_posterior_table``: the same table as fixed-width numeric text
- ``summary_tables``: fit statistics, class counts, classification
  probabilities and parameter estimates as DataFrames
- ``create_export_zip``: everything above plus the enumeration table,
  a JSON summary and a README in one ZIP archive
"""

import io
import json
import logging
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .data import Dataset
from .estimation import FitResult
from .inference import ParameterEstimates
from .selection import Enumeration

logger = logging.getLogger(__name__)


def posterior_frame(result: FitResult, dataset: Dataset,
                    indicators: Sequence[str]) -> pd.DataFrame:
    """
    Per-observation table of indicators, posterior probabilities and modal class.

    Categorical indicators are written with their original category labels.
    The index holds the original row positions of the input file.
    """
    frame = pd.DataFrame(dataset.select(indicators), columns=list(indicators), index=dataset.row_ids)
    for name in indicators:
        labels = dataset.category_labels.get(name)
        if labels is not None:
            codes = frame[name]
            frame[name] = codes.map(lambda c: np.nan if np.isnan(c) else float(labels[int(c)]))
    for k in range(result.n_classes):
        frame[f"CPROB{k + 1}"] = result.posteriors[:, k]
    frame["CLASS"] = result.modal_classes + 1
    return frame


def format_fixed_width(frame: pd.DataFrame, missing_token: str = ".",
                       width: int = 10, decimals: int = 3) -> str:
    """Render a numeric table as fixed-width text, one field of ``width`` per value."""
    def render(value) -> str:
        if pd.isna(value):
            return missing_token.rjust(width)
        return f"{float(value):{width}.{decimals}f}"

    lines = ["".join(render(v) for v in row) for row in frame.itertuples(index=False)]
    return "\n".join(lines) + "\n"


def write_posterior_table(path: Union[str, Path], frame: pd.DataFrame, missing_token: str = ".",
                          width: int = 10, decimals: int = 3) -> Path:
    """
    Write a posterior table as fixed-width numeric text.

    Column order follows ``frame``; missing values are written as the
    missing token, right-aligned in their field.
    """
    path = Path(path)
    path.write_text(format_fixed_width(frame, missing_token, width, decimals))
    logger.info(f"Wrote {len(frame)} rows x {frame.shape[1]} columns to {path} "
                f"(fields of width {width}: {', '.join(frame.columns)})")
    return path


def summary_tables(result: FitResult,
                   estimates: Optional[ParameterEstimates] = None,
                   indicators: Optional[Sequence[str]] = None) -> Dict[str, pd.DataFrame]:
    """Summary of one fit as a dictionary of DataFrames."""
    labels = [f"Class {k + 1}" for k in range(result.n_classes)]
    fit = pd.DataFrame([result.summary()]).drop(columns=['class_proportions'])
    counts = pd.DataFrame({
        'class': labels,
        'model_count': result.counts.model,
        'model_proportion': result.counts.proportions("model"),
        'posterior_count': result.counts.posterior,
        'posterior_proportion': result.counts.proportions("posterior"),
        'modal_count': result.counts.modal,
        'modal_proportion': result.counts.proportions("modal"),
    })
    classification = pd.DataFrame(result.classification, index=labels, columns=labels)
    tables = {
        'fit': fit,
        'class_counts': counts,
        'classification': classification,
        'parameters': result.model.parameter_table(None if indicators is None else list(indicators)),
    }
    if estimates is not None:
        tables['estimates'] = estimates.table
    return tables


def create_export_zip(enumeration: Enumeration,
                      dataset: Optional[Dataset] = None,
                      k: Optional[int] = None,
                      estimates: Optional[ParameterEstimates] = None) -> bytes:
    """
    Create a ZIP file containing the enumeration results.

    The ZIP includes the model comparison table, summary tables of the
    selected solution, its posterior table (CSV and fixed width) when the
    data set is supplied, a JSON summary and a README.

    Args:
        enumeration: Result of ``enumerate_classes``
        dataset: Data the models were fit to (needed for the posterior table)
        k: Solution to export in detail (lowest BIC if None)
        estimates: Standard errors for that solution, if computed

    Returns:
        bytes: ZIP file contents
    """
    k = enumeration.best_k if k is None else k
    result = enumeration.fits[k]
    zip_buffer = io.BytesIO()

    metadata = {
        'export_timestamp': datetime.now().isoformat(),
        'model_type': result.model.kind,
        'indicators': list(enumeration.indicators),
        'selected_classes': k,
        'files_included': []
    }

    def write_csv(zf, name, frame, **kwargs):
        csv_buffer = io.StringIO()
        frame.to_csv(csv_buffer, **kwargs)
        zf.writestr(name, csv_buffer.getvalue())
        metadata['files_included'].append(name)

    with zipfile.ZipFile(zip_buffer, 'w', zipfile.ZIP_DEFLATED) as zf:
        write_csv(zf, 'model_comparison.csv', enumeration.summary(), index=False)

        for name, table in summary_tables(result, estimates, enumeration.indicators).items():
            write_csv(zf, f'k{k}_{name}.csv', table, index=(name == 'classification'))

        if dataset is not None:
            frame = posterior_frame(result, dataset, enumeration.indicators)
            write_csv(zf, f'k{k}_posteriors.csv', frame, index_label='row')
            zf.writestr(f'k{k}_posteriors.dat', format_fixed_width(frame, dataset.missing_token))
            metadata['files_included'].append(f'k{k}_posteriors.dat')
            metadata['posterior_columns'] = list(frame.columns)

        model_summary = {
            'selected': result.summary(),
            'comparison': [enumeration.fits[j].summary() for j in enumeration.k_values],
            'tests': [test.summary() for _, test in sorted(enumeration.tests.items())],
        }
        if estimates is not None:
            model_summary['condition_number'] = estimates.condition_number
        zf.writestr('model_summary.json', json.dumps(model_summary, indent=2, default=_to_json))
        metadata['files_included'].append('model_summary.json')

        zf.writestr('README.md', _create_readme_content(result, metadata))
        zf.writestr('metadata.json', json.dumps(metadata, indent=2))

    zip_buffer.seek(0)
    return zip_buffer.getvalue()


def _to_json(value):
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _create_readme_content(result: FitResult, metadata: dict) -> str:
    """Generate README content for the export ZIP."""
    k = metadata['selected_classes']
    return f"""# Latent Mixture Export

## Model Type: {metadata['model_type']}

## Export Date: {metadata['export_timestamp']}

## Selected Solution: {k} classes (log-likelihood {result.log_likelihood:.3f}, BIC {result.bic:.3f})

## Files Included

{chr(10).join(f'- {f}' for f in metadata['files_included'])}

## Usage in Python

```python
import pandas as pd

comparison = pd.read_csv('model_comparison.csv')
posteriors = pd.read_csv('k{k}_posteriors.csv', index_col='row')

# Observations assigned to the first class
posteriors[posteriors['CLASS'] == 1]
```

## Interpreting Results

- **model_comparison.csv**: one row per number of classes. Lower AIC/BIC/SABIC
  is better; small VLMR/LMR/BLRT p-values favor K over K-1 classes.
- **Posterior table**: CPROB columns are posterior class probabilities, CLASS
  is the most likely class. Classes are ordered by descending size. The .dat
  file has the same columns in fixed-width fields of 10 characters.
- **classification**: average posterior probabilities by most likely class;
  a dominant diagonal indicates well-separated classes.
"""
