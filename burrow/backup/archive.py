"""
Archive codec for service backups.

Archives are POSIX tar streams (PAX headers) compressed with zstd. Creation
walks the source tree in a stable order and streams straight into the sink;
extraction reads entries sequentially and recreates them under a destination
directory.

Supported entry types:
- Regular files, directories, symbolic links, hard links and FIFOs
- Character and block devices are left out of archives and skipped on
  extraction, since recreating them needs privileges a restore may not have
"""

import os
import posixpath
import shutil
import stat
import tarfile
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Iterator, List, Optional, Sequence, Tuple

import zstandard

from .exclusion import is_excluded


DEFAULT_COMPRESSION_LEVEL = 3


class ArchiveError(Exception):
    """Raised when an archive cannot be created or extracted."""
    pass


class EntryType(str, Enum):
    FILE = 'file'
    DIRECTORY = 'directory'
    SYMLINK = 'symlink'
    HARDLINK = 'hardlink'
    FIFO = 'fifo'
    SKIPPED_DEVICE = 'skipped-device'


@dataclass(frozen=True)
class ArchiveEntry:
    """One filesystem object as seen by the codec"""
    path: str
    type: EntryType
    mode: int
    size: int = 0
    link_target: Optional[str] = None


def _entry_type(info: tarfile.TarInfo) -> Optional[EntryType]:
    if info.isreg():
        return EntryType.FILE
    if info.isdir():
        return EntryType.DIRECTORY
    if info.issym():
        return EntryType.SYMLINK
    if info.islnk():
        return EntryType.HARDLINK
    if info.isfifo():
        return EntryType.FIFO
    if info.ischr() or info.isblk():
        return EntryType.SKIPPED_DEVICE
    return None


def _to_entry(info: tarfile.TarInfo) -> ArchiveEntry:
    entry_type = _entry_type(info)
    if entry_type is None:
        raise ArchiveError(f"Unsupported entry type {info.type!r} for {info.name}")
    link = info.linkname if entry_type in (EntryType.SYMLINK, EntryType.HARDLINK) else None
    return ArchiveEntry(
        path=info.name,
        type=entry_type,
        mode=info.mode,
        size=info.size if entry_type == EntryType.FILE else 0,
        link_target=link,
    )


def walk_source(source_root: str, patterns: Sequence[str] = ()) -> Iterator[Tuple[str, str]]:
    """
    Walk a tree in lexicographic order, skipping excluded paths.

    Excluded directories are not descended into.

    Args:
        source_root: Directory to walk
        patterns: Exclusion glob patterns (relative to source_root)

    Yields:
        (absolute_path, relative_path) with forward-slash relative paths
    """
    def _walk(directory: str, relative: str):
        with os.scandir(directory) as it:
            children = sorted(it, key=lambda e: e.name)

        for child in children:
            rel_path = posixpath.join(relative, child.name) if relative else child.name
            if is_excluded(rel_path, patterns):
                continue

            yield child.path, rel_path

            if child.is_dir(follow_symlinks=False):
                yield from _walk(child.path, rel_path)

    yield from _walk(source_root, '')


def create_archive(
    source_root: str,
    patterns: Sequence[str],
    sink: BinaryIO,
    level: int = DEFAULT_COMPRESSION_LEVEL
) -> List[ArchiveEntry]:
    """
    Stream a compressed archive of source_root into sink.

    Args:
        source_root: Directory to archive (the root itself is not an entry)
        patterns: Exclusion glob patterns
        sink: Writable binary stream; left open
        level: zstd compression level

    Returns:
        Entries seen, including devices that were left out

    Raises:
        ArchiveError: If the source is missing or a file cannot be read
    """
    if not os.path.isdir(source_root):
        raise ArchiveError(f"Source directory does not exist: {source_root}")

    entries = []
    compressor = zstandard.ZstdCompressor(level=level)

    try:
        with compressor.stream_writer(sink, closefd=False) as writer:
            with tarfile.open(fileobj=writer, mode='w|', format=tarfile.PAX_FORMAT) as tar:
                for abs_path, rel_path in walk_source(source_root, patterns):
                    entry = _add_entry(tar, abs_path, rel_path)
                    if entry is not None:
                        entries.append(entry)
    except ArchiveError:
        raise
    except (OSError, tarfile.TarError, zstandard.ZstdError) as e:
        raise ArchiveError(f"Failed to create archive of {source_root}: {e}") from e

    return entries


def _add_entry(tar: tarfile.TarFile, abs_path: str, rel_path: str) -> Optional[ArchiveEntry]:
    mode = os.lstat(abs_path).st_mode

    if stat.S_ISCHR(mode) or stat.S_ISBLK(mode):
        return ArchiveEntry(path=rel_path, type=EntryType.SKIPPED_DEVICE, mode=stat.S_IMODE(mode))

    info = tar.gettarinfo(abs_path, arcname=rel_path)
    if info is None:
        # Sockets and other types tar cannot represent
        return None

    if info.isreg():
        with open(abs_path, 'rb') as f:
            tar.addfile(info, f)
    else:
        tar.addfile(info)

    return _to_entry(info)


def _safe_target(dest_root: str, name: str) -> str:
    """Resolve an entry name under dest_root, rejecting escapes."""
    normalized = posixpath.normpath(name.replace('\\', '/'))
    if normalized.startswith('/') or normalized == '..' or normalized.startswith('../'):
        raise ArchiveError(f"Refusing to extract entry outside destination: {name}")
    if normalized == '.':
        return dest_root
    return os.path.join(dest_root, *normalized.split('/'))


def _remove_existing(target: str):
    """Clear target for a new file, link or FIFO. A directory goes with its contents."""
    if os.path.isdir(target) and not os.path.islink(target):
        shutil.rmtree(target)
    elif os.path.lexists(target):
        os.remove(target)


def extract_archive(source: BinaryIO, dest_root: str) -> List[ArchiveEntry]:
    """
    Extract a compressed archive into dest_root, overwriting existing entries.

    Args:
        source: Readable binary stream positioned at the archive start
        dest_root: Destination directory (created if missing)

    Returns:
        Entries read from the archive

    Raises:
        ArchiveError: On corrupt data, unsupported entry types or write failures
    """
    entries = []
    directories = []
    decompressor = zstandard.ZstdDecompressor()

    try:
        os.makedirs(dest_root, exist_ok=True)

        with decompressor.stream_reader(source, closefd=False) as reader:
            with tarfile.open(fileobj=reader, mode='r|') as tar:
                for member in tar:
                    entry = _to_entry(member)
                    target = _safe_target(dest_root, member.name)
                    if target != dest_root:
                        os.makedirs(os.path.dirname(target), exist_ok=True)

                    if entry.type == EntryType.DIRECTORY:
                        if os.path.islink(target) or (os.path.lexists(target) and not os.path.isdir(target)):
                            os.remove(target)
                        os.makedirs(target, exist_ok=True)
                        directories.append((target, member.mode))
                    elif entry.type == EntryType.FILE:
                        _extract_file(tar, member, target)
                    elif entry.type == EntryType.SYMLINK:
                        _remove_existing(target)
                        os.symlink(member.linkname, target)
                    elif entry.type == EntryType.HARDLINK:
                        source_path = _safe_target(dest_root, member.linkname)
                        _remove_existing(target)
                        os.link(source_path, target)
                    elif entry.type == EntryType.FIFO:
                        _remove_existing(target)
                        os.mkfifo(target, member.mode)
                    # Devices are skipped

                    entries.append(entry)

        # Apply directory modes last so read-only directories can be filled first
        for target, mode in reversed(directories):
            os.chmod(target, mode)

    except ArchiveError:
        raise
    except (OSError, tarfile.TarError, zstandard.ZstdError, EOFError) as e:
        raise ArchiveError(f"Failed to extract archive into {dest_root}: {e}") from e

    return entries


def _extract_file(tar: tarfile.TarFile, member: tarfile.TarInfo, target: str):
    if os.path.lexists(target):
        current = os.lstat(target).st_mode
        if not stat.S_ISREG(current):
            # Never write through a symlink or into a FIFO left at the target path
            _remove_existing(target)
        elif not current & stat.S_IWUSR:
            os.chmod(target, stat.S_IMODE(current) | stat.S_IWUSR)

    source = tar.extractfile(member)
    if source is None:
        raise ArchiveError(f"Missing data for {member.name}")

    with open(target, 'wb') as f:
        shutil.copyfileobj(source, f)
    os.chmod(target, member.mode)

