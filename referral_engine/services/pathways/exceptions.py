"""
Pathway Domain Exceptions
"""
from typing import Iterable, List


class ValidationError(Exception):
    """Raised when a pathway tree is malformed.

    Carries every problem found, not only the first one.
    """

    def __init__(self, problems: Iterable[str]):
        self.problems: List[str] = list(problems)
        super().__init__("Invalid pathway: " + "; ".join(self.problems))
