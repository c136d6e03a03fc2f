"""The three-file page snapshot and its on-disk naming convention."""

from __future__ import annotations

from typing import Literal, get_args

from pydantic import BaseModel, ConfigDict

FileKey = Literal["index.html", "styles.css", "script.js"]
"""On-disk name of one of the three page files. Also the name tools use."""

FILE_KEYS: tuple[FileKey, ...] = get_args(FileKey)

_FIELD_BY_KEY: dict[str, str] = {
    "index.html": "markup",
    "styles.css": "styles",
    "script.js": "script",
}

# Short aliases accepted at the boundary (``html`` → ``index.html``).
_KEY_ALIASES: dict[str, FileKey] = {
    "html": "index.html",
    "css": "styles.css",
    "js": "script.js",
    "markup": "index.html",
    "styles": "styles.css",
    "script": "script.js",
}


def normalize_file_key(value: str) -> FileKey:
    """
    Resolve a file name or alias to a :data:`FileKey`.

    Raises:
        ValueError: If *value* does not name one of the three page files.
    """
    if value in _FIELD_BY_KEY:
        return value  # type: ignore[return-value]
    alias = _KEY_ALIASES.get(value.strip().lower())
    if alias is None:
        raise ValueError(f"Unknown page file: {value!r}")
    return alias


class FileSnapshot(BaseModel):
    """
    Immutable triple of page sources: markup, styles and script.

    One snapshot exists per ``(session_id, version)``. Updates never mutate
    an instance; :meth:`replace` returns a new snapshot.
    """

    model_config = ConfigDict(frozen=True)

    markup: str
    styles: str
    script: str

    def get(self, key: str) -> str:
        """Return the content of the file named *key* (name or alias)."""
        return getattr(self, _FIELD_BY_KEY[normalize_file_key(key)])

    def replace(self, key: str, content: str) -> FileSnapshot:
        """Return a copy with the file named *key* set to *content*."""
        return self.model_copy(update={_FIELD_BY_KEY[normalize_file_key(key)]: content})

    def items(self) -> list[tuple[FileKey, str]]:
        """Return ``(file name, content)`` pairs in canonical order."""
        return [(key, self.get(key)) for key in FILE_KEYS]


_DEFAULT_SCRIPT = """(() => {
  const MODIFIER_KEYS = ['metaKey', 'ctrlKey', 'shiftKey', 'altKey'];

  document.addEventListener('click', (event) => {
    if (event.defaultPrevented || event.button !== 0) {
      return;
    }
    if (MODIFIER_KEYS.some((key) => event[key])) {
      return;
    }

    const anchor = event.target?.closest?.('a');
    if (!anchor || anchor.hasAttribute('download')) {
      return;
    }

    const href = anchor.getAttribute('href')?.trim() ?? '';
    if (!href.startsWith('#')) {
      return;
    }

    event.preventDefault();
    event.stopPropagation();

    const hash = href.slice(1);
    if (!hash) {
      window.scrollTo({ top: 0, behavior: 'smooth' });
      return;
    }

    const destination = document.getElementById(hash) ?? document.querySelector('[name="' + hash + '"]');
    destination?.scrollIntoView({ behavior: 'smooth', block: 'start' });
  }, true);
})();
"""

DEFAULT_FILES = FileSnapshot(
    markup=(
        "<!DOCTYPE html>\n"
        '<html lang="en">\n'
        "  <head>\n"
        '    <meta charset="UTF-8" />\n'
        '    <meta name="viewport" content="width=device-width, initial-scale=1.0" />\n'
        "    <title>New Page</title>\n"
        '    <link rel="stylesheet" href="styles.css" />\n'
        "  </head>\n"
        "  <body>\n"
        '    <script src="script.js"></script>\n'
        "  </body>\n"
        "</html>"
    ),
    styles=(
        "/* Add your styles here */\n"
        "body {\n"
        "  font-family: system-ui, sans-serif;\n"
        "  margin: 0;\n"
        "  padding: 2rem;\n"
        "  background-color: #f5f5f5;\n"
        "}\n"
    ),
    script=_DEFAULT_SCRIPT,
)
"""Snapshot used for version 0 of a fresh session and for missing files on disk."""
