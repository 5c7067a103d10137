"""Tests for resolving @file:, @folder: and @clipboard references."""

import os
import shutil

import git
import pytest

from oneshot.exceptions import (
    AccessDeniedError,
    EncodingError,
    ReferenceInvalidError,
    SourceNotFoundError,
)
from oneshot.services.context_resolver import (
    DIRECTORY_HEADER,
    ContextResolver,
    StaticClipboard,
    language_for_path,
)
from oneshot.services.models.context_models import ContextKind, ContextType, GitFileStatus

GIT_AVAILABLE = shutil.which("git") is not None


def test_resolve_file_python_example(tmp_path) -> None:
    """A 13 character python file resolves to a file item of 3 tokens."""
    path = tmp_path / "example.py"
    path.write_text("print('hi')\n")

    item = ContextResolver().resolve(f"@file:{path}")

    assert item.kind == ContextKind.file("python")
    assert item.content == "print('hi')\n"
    assert item.token_count == 3
    assert item.display_name == "example.py"
    assert item.id == str(path)
    assert item.metadata.line_count == 1
    assert item.metadata.file_size == 12


def test_resolve_file_relative_to_base_path(tmp_path) -> None:
    (tmp_path / "notes.md").write_text("# Title\n")
    resolver = ContextResolver(base_path=str(tmp_path))

    item = resolver.resolve("@file:notes.md")

    assert item.source_path == os.path.join(str(tmp_path), "notes.md")
    assert item.kind.language == "markdown"


def test_resolve_same_file_twice_gives_same_id(tmp_path) -> None:
    (tmp_path / "a.txt").write_text("one")
    resolver = ContextResolver(base_path=str(tmp_path))

    first = resolver.resolve("@file:a.txt")
    second = resolver.resolve(f"@file:{tmp_path}/./a.txt")

    assert first.id == second.id


def test_resolve_file_reads_fresh_content(tmp_path) -> None:
    """Nothing is cached between calls."""
    path = tmp_path / "a.txt"
    path.write_text("one")
    resolver = ContextResolver()
    assert resolver.resolve(f"@file:{path}").content == "one"

    path.write_text("two")
    assert resolver.resolve(f"@file:{path}").content == "two"


def test_resolve_unknown_extension_has_no_language(tmp_path) -> None:
    path = tmp_path / "data.bin1"
    path.write_text("abc")
    item = ContextResolver().resolve(f"@file:{path}")
    assert item.kind.type is ContextType.FILE
    assert item.kind.language is None


def test_resolve_missing_file(tmp_path) -> None:
    with pytest.raises(SourceNotFoundError):
        ContextResolver().resolve(f"@file:{tmp_path}/missing.py")


def test_resolve_file_that_is_directory(tmp_path) -> None:
    with pytest.raises(ReferenceInvalidError):
        ContextResolver().resolve(f"@file:{tmp_path}")


def test_resolve_undecodable_file(tmp_path) -> None:
    path = tmp_path / "blob.dat"
    path.write_bytes(b"\xff\xfe\x00\x80\x81")
    with pytest.raises(EncodingError):
        ContextResolver().resolve(f"@file:{path}")


def test_resolve_directory_lists_sorted_entries(tmp_path) -> None:
    (tmp_path / "b.py").write_text("")
    (tmp_path / "a.py").write_text("")
    (tmp_path / "sub").mkdir()

    item = ContextResolver().resolve(f"@folder:{tmp_path}")

    assert item.kind.type is ContextType.DIRECTORY
    assert item.content == "\n".join([DIRECTORY_HEADER, "a.py", "b.py", "sub"])
    assert item.display_name == tmp_path.name


def test_resolve_folder_that_is_file(tmp_path) -> None:
    path = tmp_path / "a.py"
    path.write_text("")
    with pytest.raises(ReferenceInvalidError):
        ContextResolver().resolve(f"@folder:{path}")


def test_resolve_empty_file_counts_one_token(tmp_path) -> None:
    path = tmp_path / "empty.txt"
    path.write_bytes(b"")

    item = ContextResolver().resolve(f"@file:{path}")

    assert item.content == ""
    assert item.token_count == 1


@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0,
                    reason="root can read files without read permission")
def test_resolve_unreadable_file(tmp_path) -> None:
    path = tmp_path / "secret.txt"
    path.write_text("hidden")
    path.chmod(0)
    try:
        with pytest.raises(AccessDeniedError):
            ContextResolver().resolve(f"@file:{path}")
    finally:
        path.chmod(0o644)


def test_resolve_empty_directory(tmp_path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()

    item = ContextResolver().resolve(f"@folder:{empty}")

    assert item.content == "Directory contents:"
    assert item.metadata.custom_properties["entry_count"] == "0"


def test_resolve_clipboard() -> None:
    resolver = ContextResolver(clipboard=StaticClipboard("some copied text"))

    item = resolver.resolve("@clipboard")

    assert item.kind.type is ContextType.CLIPBOARD
    assert item.content == "some copied text"
    assert item.token_count == 4
    assert item.source_path == "clipboard://"


def test_resolve_clipboard_without_reader() -> None:
    with pytest.raises(SourceNotFoundError):
        ContextResolver().resolve("@clipboard")


@pytest.mark.parametrize("reference", ["", "file:/tmp/x", "@url:http://x", "@FILE:/tmp/x", "@file:"])
def test_resolve_invalid_reference(reference: str) -> None:
    with pytest.raises(ReferenceInvalidError):
        ContextResolver().resolve(reference)


def test_find_references_in_text() -> None:
    text = "Compare @file:src/a.py with @folder:docs and @clipboard, also @file:src/a.py"
    assert ContextResolver().find_references(text) == [
        "@file:src/a.py",
        "@folder:docs",
        "@clipboard",
    ]


def test_find_references_none() -> None:
    assert ContextResolver().find_references("plain question, email me@example.com") == []


def test_find_references_strips_trailing_punctuation() -> None:
    text = "see @file:a.py, then @folder:docs/. and (@file:b.md) or @file:."
    assert ContextResolver().find_references(text) == [
        "@file:a.py",
        "@folder:docs/",
        "@file:b.md",
    ]


def test_inline_reference_with_comma_resolves(tmp_path) -> None:
    (tmp_path / "a.py").write_text("x = 1\n")
    resolver = ContextResolver(base_path=str(tmp_path))

    [reference] = resolver.find_references("see @file:a.py, thanks")

    assert resolver.resolve(reference).content == "x = 1\n"


@pytest.fixture
def work_tree(tmp_path):
    repo = git.Repo.init(tmp_path)
    (tmp_path / ".gitignore").write_text("*.log\n")
    return repo


@pytest.mark.skipif(not GIT_AVAILABLE, reason="git not installed")
@pytest.mark.parametrize("name,staged,expected", [
    ("new.py", False, GitFileStatus.UNTRACKED),
    ("added.py", True, GitFileStatus.ADDED),
    ("debug.log", False, GitFileStatus.IGNORED),
])
def test_git_status_detection(work_tree, tmp_path, name, staged, expected) -> None:
    path = tmp_path / name
    path.write_text("content\n")
    if staged:
        work_tree.index.add([name])

    item = ContextResolver(detect_git_status=True).resolve(f"@file:{path}")

    assert item.metadata.git_status is expected


@pytest.mark.skipif(not GIT_AVAILABLE, reason="git not installed")
def test_git_status_off_by_default(work_tree, tmp_path) -> None:
    path = tmp_path / "debug.log"
    path.write_text("content\n")

    assert ContextResolver().resolve(f"@file:{path}").metadata.git_status is None


@pytest.mark.parametrize("path,language", [
    ("main.swift", "swift"),
    ("app.JS", "javascript"),
    ("lib.rs", "rust"),
    ("x.h", "c"),
    ("config.yml", "yaml"),
    ("run.zsh", "bash"),
    ("README", None),
])
def test_language_for_path(path: str, language) -> None:
    assert language_for_path(path) == language
