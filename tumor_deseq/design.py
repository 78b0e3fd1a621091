"""
Design matrix construction for the tumor-vs-normal model.

The model is count ~ condition, with the reference level (normally
"normal" tissue) as baseline so that positive log fold changes mean higher
expression in the treatment level (tumor). Extra sample covariates can be
added as further treatment-coded terms.

References:
    - Wilkinson GN, Rogers CE (1973). Symbolic description of factorial
      models for analysis of variance. Applied Statistics 22:392-399
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
"""

import numpy as np
import pandas as pd
from patsy import dmatrix

from .exceptions import PreconditionError


def build_formula(condition_col="condition", reference_level="normal",
                  covariates=()):
    """
    Build the patsy formula for a condition model.

    Parameters
    ----------
    condition_col : str
        Column of coldata holding the condition labels.
    reference_level : str
        Baseline level of the condition factor.
    covariates : sequence of str
        Extra categorical columns to adjust for.

    Returns
    -------
    str
        Formula such as ``"~ C(condition, Treatment(reference='normal'))"``.

    Examples
    --------
    >>> build_formula()
    "~ C(condition, Treatment(reference='normal'))"
    >>> build_formula(covariates=["batch"])
    "~ C(condition, Treatment(reference='normal')) + C(batch)"
    """
    terms = [f"C({condition_col}, Treatment(reference={reference_level!r}))"]
    terms.extend(f"C({c})" for c in covariates)
    return "~ " + " + ".join(terms)


def create_design_matrix(coldata, condition_col="condition",
                         reference_level="normal", covariates=()):
    """
    Create a treatment-coded design matrix from sample metadata.

    Parameters
    ----------
    coldata : pd.DataFrame
        Sample metadata indexed by sample identifier.
    condition_col : str, default "condition"
        Condition column.
    reference_level : str, default "normal"
        Baseline level; must be present in the column.
    covariates : sequence of str, optional
        Extra categorical adjustment columns.

    Returns
    -------
    np.ndarray
        Design matrix (samples x parameters), rows in coldata order.
    list
        Column names for the design matrix.

    Raises
    ------
    TypeError
        If coldata is not a DataFrame.
    PreconditionError
        If a referenced column is missing, the reference level is absent,
        or the design is not full rank.

    Examples
    --------
    >>> coldata = pd.DataFrame(
    ...     {"condition": ["normal", "normal", "tumor", "tumor"]},
    ...     index=["N1", "N2", "T1", "T2"])
    >>> X, names = create_design_matrix(coldata)
    >>> names[1]
    "C(condition, Treatment(reference='normal'))[T.tumor]"
    """
    if not isinstance(coldata, pd.DataFrame):
        raise TypeError("coldata must be a pandas DataFrame")

    for col in (condition_col, *covariates):
        if col not in coldata.columns:
            raise PreconditionError(f"coldata has no column '{col}'")

    levels = pd.unique(coldata[condition_col].astype(str))
    if reference_level not in levels:
        raise PreconditionError(
            f"Reference level '{reference_level}' not found in column "
            f"'{condition_col}' (levels: {sorted(levels)})"
        )

    data = coldata.copy()
    data[condition_col] = data[condition_col].astype(str)
    formula = build_formula(condition_col, reference_level, covariates)
    design_info = dmatrix(formula, data=data, return_type="dataframe")

    X = design_info.values
    column_names = list(design_info.columns)

    if not check_full_rank(X):
        raise PreconditionError(
            f"Design matrix for '{formula}' is not full rank; "
            "covariates are confounded with condition"
        )

    return X, column_names


def coefficient_index(design_columns, condition_col, treatment_level):
    """
    Locate the column of the treatment-vs-reference coefficient.

    Parameters
    ----------
    design_columns : list of str
        Names returned by create_design_matrix.
    condition_col : str
        Condition column name.
    treatment_level : str
        Non-reference level whose effect is tested.

    Returns
    -------
    int
        Column index.
    """
    suffix = f"[T.{treatment_level}]"
    for i, col in enumerate(design_columns):
        if col.startswith(f"C({condition_col}") and col.endswith(suffix):
            return i
    raise PreconditionError(
        f"No design column for level '{treatment_level}' of '{condition_col}'"
    )


def check_full_rank(X):
    """
    Check if a design matrix is full rank.

    A full-rank design matrix is required for unique parameter
    estimation in GLMs.

    Examples
    --------
    >>> X = np.array([[1, 0], [1, 0], [1, 1], [1, 1]])
    >>> check_full_rank(X)
    True
    """
    X = np.asarray(X, dtype=float)
    rank = np.linalg.matrix_rank(X)
    return bool(rank == min(X.shape))


def intercept_only(n_samples):
    """Design matrix with a single intercept column (blind transformations)."""
    return np.ones((n_samples, 1), dtype=float)
