#!/usr/bin/env python3

"""
Context Resolver - turns @file:, @folder: and @clipboard references into context items

Resolution reads the source every time it is called. Nothing is cached, so
callers re-resolve to observe changes.
"""

import mimetypes
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

import git
import structlog

from ..exceptions import (
    AccessDeniedError, EncodingError, ReferenceInvalidError, SourceNotFoundError
)
from .models.context_models import ContextItem, ContextKind, ContextMetadata, GitFileStatus
from .token_estimator import estimate_tokens

log = structlog.get_logger(__name__)


LANGUAGE_BY_EXTENSION = {
    'swift': 'swift',
    'js': 'javascript',
    'ts': 'typescript',
    'py': 'python',
    'java': 'java',
    'kt': 'kotlin',
    'cpp': 'cpp',
    'c': 'c',
    'h': 'c',
    'hpp': 'cpp',
    'cs': 'csharp',
    'go': 'go',
    'rs': 'rust',
    'php': 'php',
    'rb': 'ruby',
    'html': 'html',
    'css': 'css',
    'scss': 'scss',
    'json': 'json',
    'xml': 'xml',
    'yaml': 'yaml',
    'yml': 'yaml',
    'md': 'markdown',
    'sh': 'bash',
    'zsh': 'bash',
    'fish': 'fish',
}

DIRECTORY_HEADER = "Directory contents:"


def language_for_path(path: str) -> Optional[str]:
    """Infer a source language from the file extension, case-insensitively"""
    extension = os.path.splitext(path)[1].lstrip('.').lower()
    return LANGUAGE_BY_EXTENSION.get(extension)


class ClipboardReader(ABC):
    """Boundary to the system clipboard"""

    @abstractmethod
    def read_text(self) -> Optional[str]:
        """Current clipboard text, or None when the clipboard holds no text"""
        pass


class StaticClipboard(ClipboardReader):
    """Clipboard backed by a plain value, for headless use"""

    def __init__(self, text: Optional[str] = None):
        self.text = text

    def read_text(self) -> Optional[str]:
        return self.text


class ContextResolver:
    """
    Resolves reference strings into ContextItems.

    Supported references (case-sensitive):
    - ``@file:<path>``: full text of a file
    - ``@folder:<path>``: one-level listing of a directory
    - ``@clipboard``: current clipboard text
    """

    FILE_PREFIX = "@file:"
    FOLDER_PREFIX = "@folder:"
    CLIPBOARD_REFERENCE = "@clipboard"

    _REFERENCE_PATTERN = re.compile(r'@(?:file|folder):\S+|@clipboard\b')
    _TRAILING_PUNCTUATION = ".,;:!?)"

    def __init__(self, clipboard: Optional[ClipboardReader] = None,
                 base_path: Optional[str] = None,
                 encoding: str = "utf-8",
                 detect_git_status: bool = False):
        self._clipboard = clipboard
        self._base_path = base_path
        self._encoding = encoding
        self._detect_git_status = detect_git_status

    def resolve(self, reference: str) -> ContextItem:
        """
        Resolve a single reference.

        Raises:
            ReferenceInvalidError: reference matches no known scheme
            SourceNotFoundError: file, folder or clipboard does not exist
            AccessDeniedError: source exists but cannot be read
            EncodingError: file content is not valid text
        """
        reference = reference.strip()

        if reference.startswith(self.FILE_PREFIX):
            path = reference[len(self.FILE_PREFIX):]
            if not path:
                raise ReferenceInvalidError(reference, "missing path")
            return self.resolve_file(path)

        if reference.startswith(self.FOLDER_PREFIX):
            path = reference[len(self.FOLDER_PREFIX):]
            if not path:
                raise ReferenceInvalidError(reference, "missing path")
            return self.resolve_directory(path)

        if reference == self.CLIPBOARD_REFERENCE:
            return self.resolve_clipboard()

        raise ReferenceInvalidError(reference)

    def find_references(self, text: str) -> List[str]:
        """Extract reference tokens from free text, first occurrence order, without duplicates"""
        seen = []
        for match in self._REFERENCE_PATTERN.findall(text or ""):
            if match != self.CLIPBOARD_REFERENCE:
                scheme, path = match.split(':', 1)
                path = path.rstrip(self._TRAILING_PUNCTUATION)
                if not path:
                    continue
                match = f"{scheme}:{path}"
            if match not in seen:
                seen.append(match)
        return seen

    def resolve_file(self, path: str) -> ContextItem:
        full_path = self._absolute(path)
        if not os.path.exists(full_path):
            raise SourceNotFoundError(path)
        if os.path.isdir(full_path):
            raise ReferenceInvalidError(f"{self.FILE_PREFIX}{path}", "path is a directory")

        try:
            with open(full_path, 'rb') as f:
                raw = f.read()
            stat = os.stat(full_path)
        except FileNotFoundError:
            raise SourceNotFoundError(path)
        except OSError as e:
            log.warning("context.file_unreadable", path=full_path, error=str(e))
            raise AccessDeniedError(path) from e

        try:
            content = raw.decode(self._encoding)
        except UnicodeDecodeError as e:
            raise EncodingError(path, self._encoding) from e

        language = language_for_path(full_path)
        metadata = ContextMetadata(
            file_size=stat.st_size,
            encoding=self._encoding,
            mime_type=mimetypes.guess_type(full_path)[0],
            git_status=self._git_status(full_path) if self._detect_git_status else None,
            line_count=len(content.splitlines()),
            language=language,
        )

        log.debug("context.file_resolved", path=full_path, size=stat.st_size)
        return ContextItem(
            id=full_path,
            kind=ContextKind.file(language),
            source_path=full_path,
            display_name=os.path.basename(full_path) or full_path,
            content=content,
            token_count=estimate_tokens(content),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            metadata=metadata,
        )

    def resolve_directory(self, path: str) -> ContextItem:
        full_path = self._absolute(path)
        if not os.path.exists(full_path):
            raise SourceNotFoundError(path)
        if not os.path.isdir(full_path):
            raise ReferenceInvalidError(f"{self.FOLDER_PREFIX}{path}", "path is not a directory")

        try:
            entries = sorted(os.listdir(full_path))
            stat = os.stat(full_path)
        except OSError as e:
            log.warning("context.directory_unreadable", path=full_path, error=str(e))
            raise AccessDeniedError(path) from e

        content = "\n".join([DIRECTORY_HEADER] + entries)
        return ContextItem(
            id=full_path,
            kind=ContextKind.directory(),
            source_path=full_path,
            display_name=os.path.basename(full_path.rstrip(os.sep)) or full_path,
            content=content,
            token_count=estimate_tokens(content),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            metadata=ContextMetadata(
                line_count=len(entries) + 1,
                custom_properties={'entry_count': str(len(entries))},
            ),
        )

    def resolve_clipboard(self) -> ContextItem:
        if self._clipboard is None:
            raise SourceNotFoundError(self.CLIPBOARD_REFERENCE)

        try:
            text = self._clipboard.read_text() or ""
        except Exception as e:
            log.warning("context.clipboard_unreadable", error=str(e))
            raise AccessDeniedError(self.CLIPBOARD_REFERENCE) from e

        return ContextItem(
            id="clipboard",
            kind=ContextKind.clipboard(),
            source_path="clipboard://",
            display_name="Clipboard",
            content=text,
            token_count=estimate_tokens(text),
            last_modified=datetime.now(timezone.utc),
            metadata=ContextMetadata(line_count=len(text.splitlines())),
        )

    def _absolute(self, path: str) -> str:
        path = os.path.expanduser(path)
        if not os.path.isabs(path):
            path = os.path.join(self._base_path or os.getcwd(), path)
        return os.path.normpath(path)

    def _git_status(self, path: str) -> Optional[GitFileStatus]:
        """Porcelain status of a file, None outside a repository"""
        try:
            repo = git.Repo(os.path.dirname(path), search_parent_directories=True)
            output = repo.git.status("--porcelain", "--ignored", "--", path)
        except (git.InvalidGitRepositoryError, git.NoSuchPathError, git.GitCommandError) as e:
            log.debug("context.git_status_unavailable", path=path, error=str(e))
            return None

        lines = output.splitlines()
        if not lines:
            return GitFileStatus.CLEAN

        code = lines[0][:2]
        if code == "??":
            return GitFileStatus.UNTRACKED
        if code == "!!":
            return GitFileStatus.IGNORED
        for flag in code:
            if flag.strip():
                try:
                    return GitFileStatus(flag)
                except ValueError:
                    return None
        return GitFileStatus.CLEAN
