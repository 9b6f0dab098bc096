"""
Credential type name rules.

Checks run cheapest first. The uniqueness scan is last because its cost
grows with the catalog.
"""

from typing import Collection, Optional

from .errors import NameInvalid, NameRejection


class NameValidator:
    """Pure validation of candidate credential type names."""

    @staticmethod
    def check(
        name: str,
        max_length: int,
        existing_names: Collection[str],
    ) -> Optional[NameRejection]:
        """
        Return the first rule the name breaks, or None if it is acceptable.

        Length is measured in bytes. Since the name must be ASCII by the
        time length is checked, bytes and characters coincide.
        """
        if not name:
            return NameRejection.EMPTY

        if not name.isascii():
            return NameRejection.NOT_ASCII

        if len(name) > max_length:
            return NameRejection.TOO_LONG

        if name in existing_names:
            return NameRejection.NOT_UNIQUE

        return None

    @classmethod
    def validate(
        cls,
        name: str,
        max_length: int,
        existing_names: Collection[str],
    ) -> None:
        """
        Validate a name, raising on the first failure.

        Raises:
            NameInvalid: with the rejection reason
        """
        reason = cls.check(name, max_length, existing_names)
        if reason is not None:
            raise NameInvalid(reason)
