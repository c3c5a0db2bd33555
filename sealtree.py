#!/usr/bin/env python3
"""
SealTree - Tamper detection for directory trees with a password-sealed hash manifest (v1.0).

Overview:
- Fingerprints every file under a directory with SHA-512 (streamed in 1 MB chunks).
- Serializes the fingerprints into a flat text manifest, one "<path> <hash>" line per file.
- Seals the manifest with AES-256-GCM using an Argon2id key derived from a password.
- Verifies a directory against a sealed manifest and reports new, modified and deleted files.
- Optional concurrent hashing over a bounded thread pool.
- Logs to a rotating log file; colored console output is produced only by the CLI.

Dependencies:
- Python 3.9+
- cryptography (pip install cryptography)
- argon2-cffi (pip install argon2-cffi)
- colorama (pip install colorama)

Usage:
    python sealtree.py --dir ./evidence --password mypass
    python sealtree.py --dir ./evidence --check --password-file ./pass.txt
    python sealtree.py --dir ./evidence --workers 4 --verbose
    python sealtree.py --dir ./evidence --dry-run

Sealed Manifest (written to <parent>/<dirname>.hashes.enc by default):
- Salt: 16 bytes (random, for Argon2id key derivation)
- Nonce: 12 bytes (random, for AES-256-GCM)
- Ciphertext: variable (encrypted manifest text)
- Tag: 16 bytes (GCM authentication tag)

Manifest Text:
- UTF-8, one line per file: "<normalized path> <sha512 hex>\\n", sorted by path.
- Paths use '/' separators; '%', whitespace and undecodable filename bytes are percent-encoded (%XX).

Key Derivation:
- Argon2id, time cost 4, memory 64 MB, parallelism 1, 32-byte output.
- Every seal uses a fresh salt and a fresh nonce.

Mini-RFC: SealTree Manifest Protocol
- Version: 1.0
- Overview: Detects unauthorized changes to a directory tree without a central server.
- File Format: salt || nonce || AES-256-GCM(manifest) || tag.
- Verification: a wrong password and a tampered manifest fail identically.
"""
import argparse
import getpass
import hashlib
import logging
import os
import re
import secrets
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from functools import partial
from importlib import metadata
from logging.handlers import RotatingFileHandler
from pathlib import Path, PurePath
from typing import BinaryIO, Callable, Dict, FrozenSet, Iterable, Iterator, List, NamedTuple, Optional, Union
from urllib.parse import unquote
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag
from argon2.low_level import hash_secret_raw, Type
from colorama import init, deinit, Fore, Style

# Program metadata
PROGRAM_VERSION = "1.0"
PROGRAM_NAME = "SealTree"

logger = logging.getLogger(__name__)

Manifest = Dict[str, str]
Password = Union[bytes, str]
ProgressCallback = Callable[[int, int], None]

@dataclass(frozen=True)
class SealConfig:
    """Configuration constants for SealTree."""
    SALT_LENGTH: int = 16  # Bytes for random salt used in Argon2id
    NONCE_LENGTH: int = 12  # Bytes for AES-256-GCM nonce
    TAG_LENGTH: int = 16  # Bytes for AES-256-GCM authentication tag
    KEY_LENGTH: int = 32  # Bytes for the derived AES-256 key
    ARGON2_ITERATIONS: int = 4  # Argon2id time cost
    ARGON2_MEMORY: int = 64 * 1024  # Argon2id memory cost in KB (64 MB)
    ARGON2_PARALLELISM: int = 1  # Argon2id lanes
    CHUNK_SIZE: int = 1024 * 1024  # Read size for hashing (1 MB)
    MANIFEST_SUFFIX: str = ".hashes.enc"  # Appended to the directory name
    LOG_FILE: str = "sealtree.log"
    LOG_MAX_SIZE: int = 10 * 1024 * 1024  # Max log file size (10 MB)
    LOG_BACKUP_COUNT: int = 3  # Number of backup log files
    MAX_PASSWORD_LENGTH: int = 4096  # Recommended max password length (characters)
    DEFAULT_WORKERS: int = 1  # Sequential hashing unless asked otherwise
    PROGRESS_BAR_WIDTH: int = 40

    @property
    def min_sealed_length(self) -> int:
        """Salt, nonce and tag of an empty manifest (44 bytes by default)."""
        return self.SALT_LENGTH + self.NONCE_LENGTH + self.TAG_LENGTH

class SealError(ValueError):
    """
    Base error for SealTree operations.

    Args:
        message: Human readable description.
        path: File or manifest path involved, if any.
        phase: Operation phase ('traverse', 'digest', 'seal', 'open', 'write', ...).
    """
    def __init__(self, message: str, path: Optional[str] = None, phase: Optional[str] = None):
        super().__init__(message)
        self.path = path
        self.phase = phase

class SourceReadError(SealError):
    """A file or directory became unreadable during traversal or hashing."""

class FormatError(SealError):
    """A sealed manifest is too short to contain salt, nonce and tag."""

class AuthenticationError(SealError):
    """A sealed manifest failed authentication (wrong password or tampered data)."""

class PathError(SealError):
    """A relative path could not be resolved or normalized."""

AUTHENTICATION_FAILURE = "Manifest authentication failed: invalid password or corrupted data"

class FileRecord(NamedTuple):
    relative_path: str
    fingerprint: str

class FileEntry(NamedTuple):
    """A file yielded by traversal: its relative path and a callable opening it for binary reads."""
    relative_path: str
    opener: Callable[[], BinaryIO]

class SealedManifestInfo(NamedTuple):
    salt: bytes
    nonce: bytes
    ciphertext_length: int
    total_length: int

def compute_digest(stream: BinaryIO, chunk_size: int = SealConfig.CHUNK_SIZE, path: Optional[str] = None) -> str:
    """
    Compute the SHA-512 fingerprint of a binary stream.

    Args:
        stream: Readable binary stream, consumed to EOF.
        chunk_size: Bytes read per call; does not affect the result.
        path: Optional path used in error messages.

    Returns:
        str: 128-character lowercase hex digest.

    Raises:
        SourceReadError: If the stream fails mid-read.
    """
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {chunk_size}")
    sha512 = hashlib.sha512()
    try:
        for chunk in iter(lambda: stream.read(chunk_size), b''):
            sha512.update(chunk)
    except OSError as e:
        logger.error(f"Failed to read {path or 'stream'} for hashing: {e}")
        raise SourceReadError(f"Error reading {path or 'stream'}: {e}", path=path, phase='digest')
    return sha512.hexdigest()

def wipe(buffer: bytearray) -> None:
    """Overwrite a mutable buffer with zeros."""
    buffer[:] = bytes(len(buffer))

class SealKeyManager:
    """Manages salt and nonce generation and Argon2id key derivation."""
    def __init__(self, config: SealConfig):
        """
        Initialize the key manager.

        Args:
            config: SealConfig instance with program constants.
        """
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.logger.debug(
            f"Initialized SealKeyManager: memory_cost={self.config.ARGON2_MEMORY} KB, "
            f"iterations={self.config.ARGON2_ITERATIONS}, parallelism={self.config.ARGON2_PARALLELISM}"
        )

    def generate_salt(self) -> bytes:
        salt = secrets.token_bytes(self.config.SALT_LENGTH)
        self.logger.debug(f"Generated salt: {salt.hex()}")
        return salt

    def generate_nonce(self) -> bytes:
        nonce = secrets.token_bytes(self.config.NONCE_LENGTH)
        self.logger.debug(f"Generated nonce: {nonce.hex()}")
        return nonce

    def derive_key(self, password: Password, salt: bytes) -> bytearray:
        """
        Derive a 256-bit AES key from a password using Argon2id.

        Args:
            password: Password bytes, or a string encoded as UTF-8.
            salt: Salt of exactly SALT_LENGTH bytes.

        Returns:
            bytearray: Derived key; callers wipe it when done.

        Raises:
            ValueError: If the salt has the wrong length.
            SealError: If key derivation fails.
        """
        if len(salt) != self.config.SALT_LENGTH:
            raise ValueError(f"Salt must be {self.config.SALT_LENGTH} bytes, got {len(salt)}")
        secret = password.encode('utf-8') if isinstance(password, str) else bytes(password)
        self.logger.debug(f"Deriving key with salt: {salt.hex()}")
        try:
            key = hash_secret_raw(
                secret=secret,
                salt=salt,
                time_cost=self.config.ARGON2_ITERATIONS,
                memory_cost=self.config.ARGON2_MEMORY,
                parallelism=self.config.ARGON2_PARALLELISM,
                hash_len=self.config.KEY_LENGTH,
                type=Type.ID
            )
        except MemoryError as e:
            self.logger.error(f"Memory error during key derivation: {e}")
            raise SealError("Insufficient memory for key derivation", phase='derive')
        except Exception as e:
            self.logger.error(f"Key derivation failed: {type(e).__name__}")
            raise SealError(f"Error deriving key: {type(e).__name__}", phase='derive')
        return bytearray(key)

class ManifestCipher:
    """Seals and opens serialized manifests with AES-256-GCM."""
    def __init__(self, config: SealConfig, key_manager: Optional[SealKeyManager] = None):
        self.config = config
        self.key_manager = key_manager or SealKeyManager(config)
        self.logger = logging.getLogger(__name__)

    def seal(self, plaintext: bytes, password: Password) -> bytes:
        """
        Encrypt a manifest with a fresh salt and nonce.

        Args:
            plaintext: Serialized manifest.
            password: Password bytes or string.

        Returns:
            bytes: salt || nonce || ciphertext || tag.
        """
        salt = self.key_manager.generate_salt()
        key = self.key_manager.derive_key(password, salt)
        try:
            nonce = self.key_manager.generate_nonce()
            ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
        finally:
            wipe(key)
        self.logger.debug(f"Sealed {len(plaintext)} bytes of manifest into {len(ciphertext) + len(salt) + len(nonce)} bytes")
        return salt + nonce + ciphertext

    def open(self, blob: bytes, password: Password) -> bytes:
        """
        Authenticate and decrypt a sealed manifest.

        Args:
            blob: Sealed manifest bytes.
            password: Password bytes or string.

        Returns:
            bytes: The original plaintext.

        Raises:
            FormatError: If the blob is shorter than salt + nonce + tag.
            AuthenticationError: If the tag does not verify.
        """
        info = inspect_sealed_manifest(blob, self.config)
        offset = self.config.SALT_LENGTH + self.config.NONCE_LENGTH
        key = self.key_manager.derive_key(password, info.salt)
        try:
            plaintext = AESGCM(key).decrypt(info.nonce, bytes(blob[offset:]), None)
        except InvalidTag:
            self.logger.error(AUTHENTICATION_FAILURE)
            raise AuthenticationError(AUTHENTICATION_FAILURE, phase='open')
        finally:
            wipe(key)
        self.logger.debug(f"Opened sealed manifest: {len(plaintext)} bytes of plaintext")
        return plaintext

def inspect_sealed_manifest(blob: bytes, config: SealConfig = SealConfig()) -> SealedManifestInfo:
    """Split the salt and nonce off a sealed manifest without decrypting it."""
    if len(blob) < config.min_sealed_length:
        logger.error(f"Sealed manifest too short: {len(blob)} bytes, expected >= {config.min_sealed_length}")
        raise FormatError(
            f"Sealed manifest too short ({len(blob)} bytes, expected >= {config.min_sealed_length})",
            phase='open'
        )
    salt = bytes(blob[:config.SALT_LENGTH])
    nonce = bytes(blob[config.SALT_LENGTH:config.SALT_LENGTH + config.NONCE_LENGTH])
    ciphertext_length = len(blob) - config.SALT_LENGTH - config.NONCE_LENGTH - config.TAG_LENGTH
    return SealedManifestInfo(salt, nonce, ciphertext_length, len(blob))

# '%', whitespace, and the lone surrogates os.fsdecode uses for undecodable filename bytes
_ESCAPED = re.compile('[%\\s\udc80-\udcff]')

def _percent_encode(match) -> str:
    return ''.join(f"%{byte:02X}" for byte in match.group().encode('utf-8', 'surrogateescape'))

def normalize_path(relative_path: Union[str, PurePath]) -> str:
    """
    Canonicalize a relative path for storage in a manifest.

    Separators become '/', and '%', every whitespace character and every
    filename byte that is not valid UTF-8 are percent-encoded so the result is
    a single whitespace-free token that always encodes as UTF-8.

    Raises:
        PathError: If the path is empty, absolute, or climbs out with '..'.
    """
    raw = str(relative_path)
    pure = PurePath(raw)
    if not raw or pure.is_absolute() or pure.anchor:
        raise PathError(f"Not a relative path: {raw!r}", path=raw, phase='normalize')
    if '..' in pure.parts:
        raise PathError(f"Path escapes the root: {raw!r}", path=raw, phase='normalize')
    posix = pure.as_posix()
    if posix == '.':
        raise PathError(f"Not a relative path: {raw!r}", path=raw, phase='normalize')
    return _ESCAPED.sub(_percent_encode, posix)

def denormalize_path(normalized: str) -> str:
    """Reverse normalize_path for display. Undecodable bytes come back as surrogates, like os.fsdecode."""
    return unquote(normalized, errors='surrogateescape')

def encode_manifest(manifest: Manifest) -> bytes:
    """Serialize a manifest as sorted '<path> <fingerprint>' lines."""
    lines = [f"{path} {fingerprint}\n" for path, fingerprint in sorted(manifest.items())]
    return ''.join(lines).encode('utf-8')

def decode_manifest(data: bytes) -> Manifest:
    """
    Parse manifest text back into a mapping.

    Lines that are not valid UTF-8 or do not hold exactly two whitespace-separated
    fields are skipped.
    """
    manifest: Manifest = {}
    skipped = 0
    for number, raw_line in enumerate(data.splitlines(), start=1):
        try:
            parts = raw_line.decode('utf-8').split()
        except UnicodeDecodeError:
            parts = []
        if len(parts) != 2:
            if raw_line.strip():
                skipped += 1
                logger.debug(f"Skipping malformed manifest line {number}")
            continue
        manifest[parts[0]] = parts[1]
    if skipped:
        logger.warning(f"Skipped {skipped} malformed manifest line(s)")
    return manifest

@dataclass(frozen=True)
class DiffResult:
    """Classification of every path in a stored and a recalculated manifest."""
    unchanged: FrozenSet[str] = field(default_factory=frozenset)
    modified: FrozenSet[str] = field(default_factory=frozenset)
    added: FrozenSet[str] = field(default_factory=frozenset)
    deleted: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_clean(self) -> bool:
        return not (self.modified or self.added or self.deleted)

    @property
    def changed_count(self) -> int:
        return len(self.modified) + len(self.added) + len(self.deleted)

    def for_display(self) -> Dict[str, List[str]]:
        """Sorted, denormalized paths per category."""
        return {
            name: sorted(denormalize_path(path) for path in getattr(self, name))
            for name in ('unchanged', 'modified', 'added', 'deleted')
        }

def diff_manifests(stored: Manifest, recalculated: Manifest) -> DiffResult:
    """
    Compare a stored manifest against a freshly calculated one.

    Args:
        stored: Manifest recovered from the sealed file.
        recalculated: Manifest of the directory as it is now.

    Returns:
        DiffResult: Every path of both manifests in exactly one category.
    """
    unchanged, modified, added = set(), set(), set()
    for path, fingerprint in recalculated.items():
        stored_fingerprint = stored.get(path)
        if stored_fingerprint is None:
            added.add(path)
        elif stored_fingerprint == fingerprint:
            unchanged.add(path)
        else:
            modified.add(path)
    deleted = {path for path in stored if path not in recalculated}
    return DiffResult(frozenset(unchanged), frozenset(modified), frozenset(added), frozenset(deleted))

def walk_directory(root: Union[str, Path], exclude: Iterable[Union[str, Path]] = ()) -> Iterator[FileEntry]:
    """
    Yield every file below root as a FileEntry, in sorted order.

    Directory symlinks are not followed. Files listed in exclude are skipped, and so are
    FIFOs, sockets and device nodes.

    Raises:
        PathError: If root is not a directory or a file cannot be made relative to it.
        SourceReadError: If a directory cannot be listed.
    """
    root_path = Path(root).expanduser()
    if not root_path.is_dir():
        raise PathError(f"{root_path} is not a directory", path=str(root_path), phase='traverse')
    excluded = {os.path.abspath(str(p)) for p in exclude}

    def on_error(error: OSError):
        logger.error(f"Failed to list {error.filename}: {error}")
        raise SourceReadError(f"Error listing {error.filename}: {error}", path=error.filename, phase='traverse')

    for dirpath, dirnames, filenames in os.walk(root_path, onerror=on_error):
        dirnames.sort()
        for name in sorted(filenames):
            file_path = Path(dirpath) / name
            if os.path.abspath(str(file_path)) in excluded:
                logger.debug(f"Excluding {file_path} from traversal")
                continue
            # Dangling symlinks are kept so the read failure aborts the run
            if file_path.exists() and not file_path.is_file():
                logger.debug(f"Skipping {file_path}: not a regular file")
                continue
            try:
                relative = file_path.relative_to(root_path)
            except ValueError:
                raise PathError(f"Cannot resolve {file_path} relative to {root_path}", path=str(file_path), phase='traverse')
            yield FileEntry(relative.as_posix(), partial(open, file_path, 'rb'))

class ManifestProcessor:
    """Builds sealed manifests for directories and verifies directories against them."""
    def __init__(self, config: SealConfig, workers: int = SealConfig.DEFAULT_WORKERS,
                 progress: Optional[ProgressCallback] = None):
        """
        Initialize the processor.

        Args:
            config: SealConfig instance with program constants.
            workers: Number of hashing threads; 1 hashes sequentially.
            progress: Optional callback receiving (completed, total) after each file.
        """
        if workers < 1:
            raise ValueError(f"Worker count must be at least 1, got {workers}")
        self.config = config
        self.workers = workers
        self.progress = progress
        self.cipher = ManifestCipher(config)
        self.logger = logging.getLogger(__name__)
        self.logger.debug(f"Initialized ManifestProcessor: workers={workers}")

    def _hash_entry(self, entry: FileEntry) -> FileRecord:
        normalized = normalize_path(entry.relative_path)
        try:
            with entry.opener() as stream:
                fingerprint = compute_digest(stream, self.config.CHUNK_SIZE, entry.relative_path)
        except OSError as e:
            self.logger.error(f"Failed to open {entry.relative_path}: {e}")
            raise SourceReadError(f"Error reading file {entry.relative_path}: {e}", path=entry.relative_path, phase='digest')
        self.logger.info(f"Hashed: {entry.relative_path} ({fingerprint[:16]}...)")
        return FileRecord(normalized, fingerprint)

    def _report(self, completed: int, total: int) -> None:
        if self.progress:
            self.progress(completed, total)

    def hash_entries(self, entries: Iterable[FileEntry]) -> Manifest:
        """
        Fingerprint every entry into a new manifest.

        Args:
            entries: Traversal output; consumed fully before hashing starts.

        Returns:
            Manifest: Normalized path to fingerprint.

        Raises:
            SourceReadError: If any file cannot be read; nothing partial is returned.
            PathError: If a path cannot be normalized or two entries collide.
        """
        entries = list(entries)
        total = len(entries)
        start_time = time.time()
        records: List[FileRecord] = []
        if self.workers == 1 or total < 2:
            for entry in entries:
                records.append(self._hash_entry(entry))
                self._report(len(records), total)
        else:
            executor = ThreadPoolExecutor(max_workers=min(self.workers, total))
            try:
                futures = [executor.submit(self._hash_entry, entry) for entry in entries]
                for future in as_completed(futures):
                    records.append(future.result())
                    self._report(len(records), total)
            except BaseException:
                executor.shutdown(wait=True, cancel_futures=True)
                raise
            executor.shutdown(wait=True)

        manifest: Manifest = {}
        for record in records:
            if record.relative_path in manifest:
                raise PathError(f"Duplicate path in traversal: {record.relative_path}",
                                path=record.relative_path, phase='traverse')
            manifest[record.relative_path] = record.fingerprint
        self.logger.info(f"Hashed {total} files in {time.time() - start_time:.2f}s")
        return manifest

    def build_manifest(self, entries: Iterable[FileEntry], password: Password) -> bytes:
        """Hash entries, encode the manifest and seal it. Returns the sealed bytes."""
        manifest = self.hash_entries(entries)
        return self.cipher.seal(encode_manifest(manifest), password)

    def verify_manifest(self, sealed: bytes, password: Password, entries: Iterable[FileEntry]) -> DiffResult:
        """
        Open a sealed manifest and compare it with a fresh hash of entries.

        The manifest is opened before any file is hashed.

        Raises:
            FormatError, AuthenticationError: If the sealed manifest cannot be opened.
            SourceReadError, PathError: If the entries cannot be hashed.
        """
        stored = decode_manifest(self.cipher.open(sealed, password))
        self.logger.info(f"Loaded stored manifest with {len(stored)} entries")
        recalculated = self.hash_entries(entries)
        result = diff_manifests(stored, recalculated)
        self.logger.info(
            f"Verification: unchanged={len(result.unchanged)}, modified={len(result.modified)}, "
            f"added={len(result.added)}, deleted={len(result.deleted)}"
        )
        return result

    def default_manifest_path(self, root: Union[str, Path]) -> Path:
        root_path = Path(root).expanduser().resolve()
        return root_path.parent / f"{root_path.name}{self.config.MANIFEST_SUFFIX}"

    def _read_file(self, file_path: Path) -> bytes:
        try:
            data = file_path.read_bytes()
        except OSError as e:
            self.logger.error(f"Failed to read file {file_path}: {e}")
            raise SourceReadError(f"Error reading file {file_path}: {e}", path=str(file_path), phase='read')
        self.logger.debug(f"Read {len(data)} bytes from {file_path}")
        return data

    def _write_file(self, file_path: Path, data: bytes) -> None:
        """Write data through a temporary file so a failed write never leaves a partial manifest."""
        temp_path = file_path.with_name(f"{file_path.name}.{secrets.token_hex(8)}.tmp")
        try:
            if file_path.exists():
                self.logger.warning(f"Overwriting existing manifest: {file_path}")
            with temp_path.open('wb') as f:
                f.write(data)
            os.replace(temp_path, file_path)
        except OSError as e:
            self.logger.error(f"Failed to write file {file_path}: {e}")
            if temp_path.exists():
                temp_path.unlink()
            raise SealError(f"Error writing file {file_path}: {e}", path=str(file_path), phase='write')
        self.logger.debug(f"Wrote {len(data)} bytes to {file_path}")

    def build_directory(self, root: Union[str, Path], password: Password,
                        manifest_path: Optional[Union[str, Path]] = None, dry_run: bool = False,
                        exclude: Iterable[Union[str, Path]] = ()) -> Path:
        """
        Seal a manifest of every file under root.

        Args:
            root: Directory to fingerprint.
            password: Password for sealing.
            manifest_path: Output path; defaults to <parent>/<name>.hashes.enc.
            dry_run: If True, build the manifest but do not write it.
            exclude: Extra files under root to leave out, such as an active log file.

        Returns:
            Path: Where the sealed manifest was (or would be) written.
        """
        target = Path(manifest_path).expanduser() if manifest_path else self.default_manifest_path(root)
        self.logger.info(f"Building manifest for {root} into {target}")
        sealed = self.build_manifest(walk_directory(root, exclude=[target, *exclude]), password)
        if dry_run:
            self.logger.info(f"Dry run: would write {len(sealed)} bytes to {target}")
            return target
        self._write_file(target, sealed)
        self.logger.info(f"Stored sealed manifest ({len(sealed)} bytes) in {target}")
        return target

    def verify_directory(self, root: Union[str, Path], password: Password,
                         manifest_path: Optional[Union[str, Path]] = None,
                         exclude: Iterable[Union[str, Path]] = ()) -> DiffResult:
        """Verify every file under root against its sealed manifest. The manifest is never rewritten."""
        source = Path(manifest_path).expanduser() if manifest_path else self.default_manifest_path(root)
        self.logger.info(f"Verifying {root} against {source}")
        sealed = self._read_file(source)
        info = inspect_sealed_manifest(sealed, self.config)
        self.logger.debug(
            f"Sealed manifest {source}: salt={info.salt.hex()}, nonce={info.nonce.hex()}, "
            f"ciphertext={info.ciphertext_length} bytes"
        )
        return self.verify_manifest(sealed, password, walk_directory(root, exclude=[source, *exclude]))

class SealCLI:
    """Command-line interface for SealTree."""
    EXIT_OK = 0
    EXIT_CHANGED = 1
    EXIT_ERROR = 2

    def __init__(self, config: SealConfig = SealConfig()):
        self.config = config
        self.logger = logging.getLogger(__name__)

    def _configure_logging(self, log_file: str, verbose: bool) -> None:
        """Replace any handlers from an earlier run with a rotating file handler and, when verbose, a console handler."""
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        log_handler = RotatingFileHandler(
            log_file,
            maxBytes=self.config.LOG_MAX_SIZE,
            backupCount=self.config.LOG_BACKUP_COUNT,
            encoding='utf-8',
            errors='backslashreplace'
        )
        log_handler.setFormatter(formatter)
        self.logger.addHandler(log_handler)
        if verbose:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)
        self.logger.setLevel(logging.DEBUG)

        versions = {}
        for distribution in ("cryptography", "argon2-cffi", "colorama"):
            try:
                versions[distribution] = metadata.version(distribution)
            except metadata.PackageNotFoundError:
                versions[distribution] = "unknown"
        self.logger.info(
            f"Starting {PROGRAM_NAME} v{PROGRAM_VERSION}, dependencies: "
            + ", ".join(f"{name}={version}" for name, version in versions.items())
        )

    def _read_password_from_file(self, file_path: str) -> str:
        """
        Read a password from a file, stripping whitespace.

        Raises:
            ValueError: If the file cannot be read.
        """
        path = Path(file_path).expanduser()
        try:
            password = path.read_text(encoding='utf-8').strip()
        except (OSError, UnicodeDecodeError) as e:
            self.logger.error(f"Failed to read password from {path}: {e}")
            raise ValueError(f"Error reading password file {path}: {e}")
        self.logger.debug(f"Read password from file: {path} (length: {len(password)} characters)")
        return password

    def _validate_password(self, password: str) -> None:
        if not password:
            raise ValueError("Password cannot be empty")
        if len(password) > self.config.MAX_PASSWORD_LENGTH:
            warning = (
                f"Password length ({len(password)} characters) exceeds recommended maximum "
                f"({self.config.MAX_PASSWORD_LENGTH} characters). Processing will continue, but key derivation may be slower."
            )
            self.logger.warning(warning)
            print(f"{Fore.YELLOW}Warning: {warning}{Style.RESET_ALL}")

    def _print_progress(self, completed: int, total: int) -> None:
        """Render a text progress bar on stdout."""
        width = self.config.PROGRESS_BAR_WIDTH
        filled = int(width * completed / total) if total else width
        print(f"\r[{'=' * filled}{' ' * (width - filled)}] {completed}/{total}", end='', flush=True)
        if completed == total:
            print()

    @staticmethod
    def _printable(path: str) -> str:
        """Undecodable filename bytes are shown as replacement characters."""
        return path.encode('utf-8', 'surrogateescape').decode('utf-8', 'replace')

    def _print_report(self, result: DiffResult) -> None:
        display = result.for_display()
        for path in display['added']:
            print(f"{Fore.YELLOW}New file detected: {self._printable(path)}{Style.RESET_ALL}")
        for path in display['modified']:
            print(f"{Fore.RED}Integrity check failed for: {self._printable(path)}{Style.RESET_ALL}")
        for path in display['deleted']:
            print(f"{Fore.RED}Deleted file detected: {self._printable(path)}{Style.RESET_ALL}")
        if result.is_clean:
            print(f"{Fore.GREEN}Integrity check successful. All {len(result.unchanged)} files are verified.{Style.RESET_ALL}")
        else:
            print(
                f"{Fore.RED}Some files are missing or have been modified: {len(display['modified'])} modified, "
                f"{len(display['added'])} new, {len(display['deleted'])} deleted.{Style.RESET_ALL}"
            )

    def build_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog='sealtree',
            description=(
                f"{PROGRAM_NAME}: tamper detection for directory trees.\n"
                f"Version {PROGRAM_VERSION}\n"
                "Fingerprints every file with SHA-512 and seals the list with AES-256-GCM and Argon2id.\n"
                "Without --check a new sealed manifest is built; with --check the directory is verified.\n"
                "Password can be provided via --password, --password-file, or interactive prompt."
            ),
            epilog=(
                "Examples:\n"
                "  Build a manifest: python sealtree.py --dir ./data --password mypass\n"
                "  Verify a directory: python sealtree.py --dir ./data --check --password-file ./pass.txt\n"
                "  Custom manifest location: python sealtree.py --dir ./data --manifest ./data.enc\n"
                "  Parallel hashing: python sealtree.py --dir ./data --workers 4 --verbose\n"
                "Exit codes: 0 success, 1 changes detected, 2 error."
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter
        )
        parser.add_argument('--dir', type=str, required=True, help='The directory to hash and monitor for integrity')
        parser.add_argument('--check', action='store_true', help='Check integrity of the directory against its manifest')
        parser.add_argument('--manifest', type=str, help='Sealed manifest path (default: <parent>/<dir>.hashes.enc)')
        password_group = parser.add_mutually_exclusive_group()
        password_group.add_argument('--password', type=str, help='Password for manifest encryption')
        password_group.add_argument('--password-file', type=str, help='File containing the password (UTF-8)')
        parser.add_argument('--workers', type=int, default=self.config.DEFAULT_WORKERS,
                            help='Number of hashing threads (default: 1)')
        parser.add_argument('--verbose', action='store_true', help='Log progress to the console instead of a progress bar')
        parser.add_argument('--dry-run', action='store_true', help='Build the manifest without writing it')
        parser.add_argument('--log-file', type=str, default=self.config.LOG_FILE, help='Log file path')
        return parser

    def log_files(self, log_file: str) -> List[str]:
        """The active log file and its rotated backups, which must never be sealed."""
        return [log_file] + [f"{log_file}.{index}" for index in range(1, self.config.LOG_BACKUP_COUNT + 1)]

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Parse command-line arguments and execute the program. Returns the exit code."""
        init(autoreset=True)
        try:
            return self._run(argv)
        except KeyboardInterrupt:
            self.logger.error("Interrupted by user")
            print(f"{Fore.RED}Interrupted{Style.RESET_ALL}")
            return self.EXIT_ERROR
        except Exception as e:
            self.logger.exception(f"Unexpected failure: {e}")
            print(f"{Fore.RED}Unexpected error: {e}{Style.RESET_ALL}")
            return self.EXIT_ERROR
        finally:
            deinit()

    def _run(self, argv: Optional[List[str]]) -> int:
        parser = self.build_parser()
        try:
            args = parser.parse_args(argv)
        except SystemExit as e:
            return self.EXIT_OK if e.code == 0 else self.EXIT_ERROR

        if args.check and args.dry_run:
            print(f"{Fore.RED}Error: --dry-run cannot be combined with --check{Style.RESET_ALL}")
            return self.EXIT_ERROR
        if args.workers < 1:
            print(f"{Fore.RED}Error: --workers must be at least 1{Style.RESET_ALL}")
            return self.EXIT_ERROR
        root = Path(args.dir).expanduser()
        if not root.is_dir():
            print(f"{Fore.RED}Error: {root} is not a directory{Style.RESET_ALL}")
            return self.EXIT_ERROR

        try:
            self._configure_logging(args.log_file, args.verbose)
        except OSError as e:
            print(f"{Fore.RED}Error opening log file {args.log_file}: {e}{Style.RESET_ALL}")
            return self.EXIT_ERROR
        print(f"{Fore.CYAN}{PROGRAM_NAME} v{PROGRAM_VERSION}{Style.RESET_ALL}")
        print(f"Mode: {'verify' if args.check else 'build'}, Directory: {self._printable(str(root))}, Workers: {args.workers}")

        try:
            password = (
                args.password or
                (self._read_password_from_file(args.password_file) if args.password_file else None) or
                getpass.getpass(f"{Fore.CYAN}Enter the encryption password: {Style.RESET_ALL}")
            )
            self._validate_password(password)
        except (ValueError, EOFError) as e:
            self.logger.error(f"Failed to obtain password: {e}")
            print(f"{Fore.RED}Error obtaining password: {e}{Style.RESET_ALL}")
            return self.EXIT_ERROR

        processor = ManifestProcessor(
            self.config, workers=args.workers,
            progress=None if args.verbose else self._print_progress
        )
        exclude = self.log_files(args.log_file)
        start_time = time.time()
        try:
            if args.check:
                result = processor.verify_directory(root, password, args.manifest, exclude=exclude)
            else:
                target = processor.build_directory(root, password, args.manifest, args.dry_run, exclude=exclude)
        except AuthenticationError:
            print(f"{Fore.RED}Error: {AUTHENTICATION_FAILURE}{Style.RESET_ALL}")
            return self.EXIT_ERROR
        except SealError as e:
            phase = f" during {e.phase}" if e.phase else ""
            print(f"{Fore.RED}Error{phase}: {e}{Style.RESET_ALL}")
            return self.EXIT_ERROR
        elapsed_time = time.time() - start_time

        if args.check:
            self._print_report(result)
            self.logger.info(f"Verified {root} in {elapsed_time:.2f}s, clean={result.is_clean}")
            return self.EXIT_OK if result.is_clean else self.EXIT_CHANGED
        if args.dry_run:
            print(f"{Fore.YELLOW}Dry run: hashes would be stored in {target}{Style.RESET_ALL}")
        else:
            print(f"{Fore.GREEN}Hashes stored in {target} ({elapsed_time:.2f}s){Style.RESET_ALL}")
        return self.EXIT_OK

def main() -> None:
    sys.exit(SealCLI().run())

if __name__ == "__main__":
    main()
