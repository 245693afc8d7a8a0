"""String replacement engine for the edit_file tool.

Matching is exact: old_string must occur verbatim in the file. Without
replace_all it must occur exactly once, so an edit can never silently land
on the wrong occurrence.
"""

from __future__ import annotations


class EditError(ValueError):
    """Raised when a replacement cannot be applied unambiguously."""

    def __init__(self, message: str, occurrences: int = 0):
        super().__init__(message)
        self.occurrences = occurrences


def replace(
    content: str,
    old_string: str,
    new_string: str,
    replace_all: bool = False,
) -> tuple[str, int]:
    """Replace old_string with new_string in content.

    Returns (new_content, replacements).

    Raises EditError:
      - old_string is empty, or equal to new_string
      - old_string does not occur in content
      - old_string occurs more than once and replace_all is False
    """
    if not old_string:
        raise EditError("old_string must not be empty")
    if old_string == new_string:
        raise EditError("old_string and new_string are identical, no changes to make")

    count = content.count(old_string)
    if count == 0:
        raise EditError(
            "old_string not found in file. "
            "Make sure it matches exactly, including whitespace and indentation."
        )
    if count > 1 and not replace_all:
        raise EditError(
            f"found {count} occurrences of old_string. "
            "Set replace_all to true to replace every occurrence, "
            "or include more surrounding context to make the match unique.",
            occurrences=count,
        )

    if replace_all:
        return content.replace(old_string, new_string), count
    return content.replace(old_string, new_string, 1), 1
