"""Loading and validation of the retrieval source catalogue.

The catalogue is a JSON file::

    {
      "sources": [
        {
          "name": "Parks",
          "description": "Opening hours, facilities and events in city parks",
          "keywords": ["park", "playground", "trail"],
          "data_source": {
            "type": "azure_search",
            "parameters": {
              "endpoint": "${AZURE_SEARCH_ENDPOINT}",
              "key": "${AZURE_SEARCH_KEY}",
              "index_name": "parks"
            }
          }
        }
      ]
    }

``${VAR}`` placeholders are expanded from the environment.  Without a
catalogue file, a single source is built from the ``AZURE_SEARCH_*``
settings.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from concierge.config import Settings, get_settings
from concierge.errors import CatalogueError
from concierge.models import (
    AzureSearchParameters,
    AzureSearchSource,
    DataSourceCatalogue,
    DataSourceEntry,
)

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _expand_placeholders(text: str) -> str:
    def _sub(match: re.Match) -> str:
        name = match.group(1)
        value = os.environ.get(name)
        if value is None:
            logger.warning("Catalogue references unset environment variable %s", name)
            return ""
        # Values land inside JSON strings.
        return json.dumps(value)[1:-1]

    return _PLACEHOLDER_RE.sub(_sub, text)


def parse_catalogue(text: str) -> DataSourceCatalogue:
    """Parse and validate catalogue JSON text."""
    try:
        raw = json.loads(_expand_placeholders(text))
    except json.JSONDecodeError as exc:
        raise CatalogueError(f"Catalogue is not valid JSON: {exc}") from exc
    try:
        return DataSourceCatalogue.model_validate(raw)
    except ValidationError as exc:
        raise CatalogueError(f"Invalid source catalogue: {exc}") from exc


def catalogue_from_settings(settings: Settings) -> DataSourceCatalogue:
    """Build a one-source catalogue from the ``AZURE_SEARCH_*`` settings."""
    if not (settings.search_endpoint and settings.search_index and settings.search_key):
        raise CatalogueError(
            "No source catalogue found. Create sources.json or set "
            "AZURE_SEARCH_ENDPOINT, AZURE_SEARCH_KEY and AZURE_SEARCH_INDEX."
        )
    entry = DataSourceEntry(
        name=settings.search_index,
        description="Default search index",
        data_source=AzureSearchSource(
            parameters=AzureSearchParameters(
                endpoint=settings.search_endpoint,
                key=settings.search_key,
                index_name=settings.search_index,
                role_information=settings.system_prompt,
            )
        ),
    )
    return DataSourceCatalogue(sources=[entry])


def load_catalogue(
    path: Optional[Path | str] = None,
    settings: Optional[Settings] = None,
) -> DataSourceCatalogue:
    """Load the catalogue once at startup.

    Reads ``path`` (default: ``settings.sources_path``) when it exists,
    otherwise falls back to :func:`catalogue_from_settings`.
    """
    settings = settings or get_settings()
    catalogue_path = Path(path) if path else settings.sources_path

    if catalogue_path.exists():
        try:
            text = catalogue_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CatalogueError(f"Cannot read {catalogue_path}: {exc}") from exc
        catalogue = parse_catalogue(text)
        logger.info("Loaded %d retrieval sources from %s", len(catalogue), catalogue_path)
        return catalogue

    if path:
        raise CatalogueError(f"Catalogue file not found: {catalogue_path}")
    return catalogue_from_settings(settings)
