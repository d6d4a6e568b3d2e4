"""Markdown loader turning .md files into ingestible documents.

Handles:
- YAML frontmatter parsing (title, version and extra metadata)
- Title fallback to the first heading
- Stable document ids derived from the path relative to the source root
"""
import re
from pathlib import Path
from typing import Dict, Any, Optional, Tuple
from dataclasses import dataclass
import yaml
import structlog

from docrag.errors import InvalidDocumentError
from docrag.models import Document

logger = structlog.get_logger()

# Frontmatter keys copied into document metadata
METADATA_FIELDS = ("tags", "created", "updated", "author")


@dataclass
class MarkdownDocument:
    """Parsed markdown document with content and metadata."""

    path: Path
    frontmatter: Dict[str, Any]
    text_without_frontmatter: str
    first_heading: Optional[str]


class MarkdownParser:
    """Parser for markdown documents with frontmatter support."""

    # Regex for YAML frontmatter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(
        r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL | re.MULTILINE
    )

    # Regex for markdown headings
    HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+?)$", re.MULTILINE)

    def parse_file(self, file_path: Path) -> MarkdownDocument:
        """Parse a markdown file and extract content and metadata.

        Raises:
            FileNotFoundError: If file doesn't exist
            InvalidDocumentError: If the file is not valid UTF-8
        """
        if not file_path.exists():
            raise FileNotFoundError(f"Markdown file not found: {file_path}")

        try:
            content = file_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            logger.error("markdown_encoding_error", path=str(file_path), error=str(e))
            raise InvalidDocumentError(f"{file_path} is not valid UTF-8") from e

        frontmatter, text = self._parse_frontmatter(content)
        heading = self.HEADING_PATTERN.search(text)

        logger.debug(
            "markdown_parsed",
            path=str(file_path),
            has_frontmatter=bool(frontmatter),
            content_length=len(text),
        )

        return MarkdownDocument(
            path=file_path,
            frontmatter=frontmatter,
            text_without_frontmatter=text,
            first_heading=heading.group(2).strip() if heading else None,
        )

    def load_document(self, file_path: Path, root: Optional[Path] = None) -> Document:
        """Parse a file into a Document whose id is its path relative to ``root``."""
        parsed = self.parse_file(file_path)
        document_id = str(file_path.relative_to(root)) if root else file_path.name
        frontmatter = parsed.frontmatter

        metadata = {}
        for field in METADATA_FIELDS:
            if field in frontmatter:
                value = frontmatter[field]
                # Convert date/datetime objects to ISO format strings
                if hasattr(value, "isoformat"):
                    value = value.isoformat()
                metadata[field] = value

        version = frontmatter.get("version")
        return Document(
            document_id=document_id,
            content=parsed.text_without_frontmatter,
            title=frontmatter.get("title") or parsed.first_heading or file_path.stem,
            origin=str(file_path),
            version=str(version) if version is not None else None,
            metadata=metadata,
        )

    def _parse_frontmatter(self, content: str) -> Tuple[Dict[str, Any], str]:
        """Extract YAML frontmatter from markdown content.

        Returns:
            Tuple of (frontmatter_dict, content_without_frontmatter)
        """
        match = self.FRONTMATTER_PATTERN.match(content)

        if not match:
            return {}, content

        yaml_content = match.group(1)
        try:
            frontmatter = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            logger.warning(
                "frontmatter_parse_error",
                error=str(e),
                yaml_preview=yaml_content[:100],
            )
            frontmatter = None

        if not isinstance(frontmatter, dict):
            frontmatter = {}

        return frontmatter, content[match.end() :]
