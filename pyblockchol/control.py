"""
Control parameters for blocked Cholesky factorization.
"""

class FactorControl:
    """
    Control parameters for the blocked Cholesky factorization.

    Parameters
    ----------
    singular_tol : float, default=1e-10
        Relative threshold below which a dense pivot is treated as zero
        when the matrix is computationally singular. Pivots are compared
        against ``singular_tol * max(diag(A))`` of the pivot block.
    monitoring : bool, default=False
        Whether to print factorization progress
    check_structure : bool, default=True
        Whether to verify, before any block is modified, that a kernel
        exists for every downdate and triangular solve the factorization
        will perform
    """

    def __init__(
        self,
        singular_tol: float = 1e-10,
        monitoring: bool = False,
        check_structure: bool = True
    ):
        if singular_tol < 0:
            raise ValueError(f"singular_tol must be non-negative, got {singular_tol}")
        self.singular_tol = singular_tol
        self.monitoring = monitoring
        self.check_structure = check_structure

    def __repr__(self):
        return (f"FactorControl(singular_tol={self.singular_tol}, monitoring={self.monitoring}, "
                f"check_structure={self.check_structure})")
