"""
Exceptions raised by the tumor_deseq pipeline.

Only problems with the inputs themselves are raised. Numerical trouble with
a single gene (non-convergence, undefined dispersion) is reported through
flag columns in the result tables instead, so one bad gene never aborts a
batch.
"""


class PreconditionError(ValueError):
    """
    Fatal input problem: misaligned samples and metadata, an empty matrix,
    non-integer counts, a malformed design.

    Subclasses ValueError so callers that already guard against bad
    arguments keep working.
    """
