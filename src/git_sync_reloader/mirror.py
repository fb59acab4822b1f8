"""One-directional mirroring of a fetched tree onto the target directory.

``MirrorSyncer.compute_plan`` diffs the two trees into an ordered
``MirrorPlan``; ``MirrorSyncer.apply_plan`` executes it. Applying stops at
the first failing operation and never rolls back: the orchestrator keeps the
previous revision committed, and the next cycle recomputes a plan from
whatever state the target was left in.
"""

import contextlib
import hashlib
import logging
import os
import shutil
import stat
import tempfile
import time
import uuid
from pathlib import Path

from .constants import APP_NAME, MIRROR_IGNORES, TEMP_PREFIX
from .exceptions import MirrorError
from .models import MirrorOperation, MirrorPlan, MirrorResult

logger = logging.getLogger(APP_NAME)

FILE = "file"
DIR = "dir"
SYMLINK = "symlink"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

_HASH_CHUNK_SIZE = 65536


def _file_oid(path: Path) -> str:
    """Compute the git blob OID of a regular file by streaming through SHA-1.

    Git blob OID = SHA-1(``blob <size>\\0`` + content).
    """
    size = path.stat().st_size
    h = hashlib.sha1(f"blob {size}\0".encode())
    with open(path, "rb") as f:
        while chunk := f.read(_HASH_CHUNK_SIZE):
            h.update(chunk)
    return h.hexdigest()


def _reraise(error: OSError) -> None:
    # os.walk skips unreadable directories unless told otherwise.
    raise error


def _walk_tree(root: Path) -> dict[str, str]:
    """Return ``{relative_path: entry_type}`` for everything under *root*.

    Symlinked directories are recorded as symlinks and not descended into.
    Names in MIRROR_IGNORES are skipped at every level. A missing root yields
    an empty mapping.

    Raises:
        OSError: If any directory below *root* cannot be listed.
    """
    result: dict[str, str] = {}
    if not root.is_dir():
        return result

    for dirpath, dirnames, filenames in os.walk(root, onerror=_reraise):
        dp = Path(dirpath)
        keep = []
        for dname in sorted(dirnames):
            if dname in MIRROR_IGNORES:
                continue
            full = dp / dname
            rel = full.relative_to(root).as_posix()
            if full.is_symlink():
                result[rel] = SYMLINK
            else:
                result[rel] = DIR
                keep.append(dname)
        dirnames[:] = keep

        for fname in filenames:
            if fname in MIRROR_IGNORES:
                continue
            full = dp / fname
            rel = full.relative_to(root).as_posix()
            result[rel] = SYMLINK if full.is_symlink() else FILE
    return result


def _ancestors(path: str) -> list[str]:
    """'a/b/c' -> ['a', 'a/b']."""
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


def _file_differs(source: Path, dest: Path) -> bool:
    src_st = source.stat()
    dst_st = dest.stat()
    if stat.S_IMODE(src_st.st_mode) != stat.S_IMODE(dst_st.st_mode):
        return True
    if src_st.st_size != dst_st.st_size:
        return True
    return _file_oid(source) != _file_oid(dest)


def _remove(path: Path) -> None:
    """Remove a file, symlink or directory tree. Missing paths are ignored."""
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.is_dir():
        shutil.rmtree(path)


def _clear_for(dest: Path, entry_type: str) -> None:
    """Remove whatever occupies *dest* if it cannot be replaced in place."""
    if entry_type == DIR:
        if dest.is_symlink() or (dest.exists() and not dest.is_dir()):
            dest.unlink()
    elif dest.is_dir() and not dest.is_symlink():
        # os.replace cannot swap a directory for a file or link.
        shutil.rmtree(dest)


def _write_file(source: Path, dest: Path, mode: int | None) -> None:
    """Copy *source* over *dest* through a temp file so readers never see a partial file."""
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=TEMP_PREFIX)
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        shutil.copyfile(source, tmp)
        if mode is not None:
            os.chmod(tmp, mode)
        _clear_for(dest, FILE)
        os.replace(tmp, dest)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise


def _write_symlink(link_target: str, dest: Path) -> None:
    while True:
        tmp = dest.parent / f"{TEMP_PREFIX}{uuid.uuid4().hex[:12]}"
        try:
            os.symlink(link_target, tmp)
            break
        except FileExistsError:
            continue
    try:
        _clear_for(dest, SYMLINK)
        os.replace(tmp, dest)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise


def _error_kind(exc: OSError) -> str:
    if isinstance(exc, PermissionError):
        return "permission"
    if isinstance(exc, (FileExistsError, NotADirectoryError, IsADirectoryError)):
        return "conflict"
    return "io"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class MirrorSyncer:
    """Makes a target directory an exact copy of a source tree."""

    def compute_plan(self, source_root: Path, target_root: Path) -> MirrorPlan:
        """Diff *source_root* against *target_root*.

        Creates and updates come first, sorted by path so parents precede their
        children. Deletes follow, deepest first, so the target stays walkable
        at every intermediate step.

        Args:
            source_root (Path): The fetched tree.
            target_root (Path): The mirror directory (may not exist yet).

        Returns:
            MirrorPlan: The ordered operations, empty if the trees already match.

        Raises:
            MirrorError: If the source is missing or either tree cannot be read.
        """
        if not source_root.is_dir():
            raise MirrorError(
                f"Source tree not found: {source_root}", path="", kind="io"
            )

        try:
            source = _walk_tree(source_root)
            target = _walk_tree(target_root)
            writes = self._plan_writes(source, target, source_root, target_root)
        except OSError as e:
            raise MirrorError(
                str(e), path=str(e.filename or ""), kind=_error_kind(e)
            ) from e

        # A directory replaced by a file or link takes its contents with it.
        replaced_dirs = {
            op.path
            for op in writes
            if op.kind == "update" and target.get(op.path) == DIR
        }
        deletes = [
            MirrorOperation(kind="delete", path=rel, entry_type=target[rel])
            for rel in target
            if rel not in source
            and not any(a in replaced_dirs for a in _ancestors(rel))
        ]
        deletes.sort(key=lambda op: (-op.path.count("/"), op.path))

        return MirrorPlan(
            source_root=source_root,
            target_root=target_root,
            operations=writes + deletes,
        )

    def _plan_writes(
        self,
        source: dict[str, str],
        target: dict[str, str],
        source_root: Path,
        target_root: Path,
    ) -> list[MirrorOperation]:
        writes: list[MirrorOperation] = []
        for rel in sorted(source):
            entry_type = source[rel]
            src = source_root / rel
            mode = stat.S_IMODE(src.stat().st_mode) if entry_type == FILE else None
            op_source = None if entry_type == DIR else src

            if rel not in target:
                kind = "create"
            elif target[rel] != entry_type:
                kind = "update"
            elif entry_type == FILE and _file_differs(src, target_root / rel):
                kind = "update"
            elif entry_type == SYMLINK and os.readlink(src) != os.readlink(
                target_root / rel
            ):
                kind = "update"
            else:
                continue

            writes.append(
                MirrorOperation(
                    kind=kind,
                    path=rel,
                    entry_type=entry_type,
                    source=op_source,
                    mode=mode,
                )
            )
        return writes

    def apply_plan(self, plan: MirrorPlan, deadline: float | None = None) -> MirrorResult:
        """Execute *plan* against its target root.

        Args:
            plan (MirrorPlan): The plan returned by ``compute_plan``.
            deadline (float | None, optional): ``time.monotonic()`` value after
                which no further operation is started.

        Returns:
            MirrorResult: ``changed`` is False iff the plan was empty.

        Raises:
            MirrorError: For the first failing operation; earlier operations
                stay applied.
        """
        try:
            plan.target_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MirrorError(str(e), path="", kind=_error_kind(e)) from e

        if plan.is_empty:
            return MirrorResult(changed=False, applied=0)

        applied = 0
        for op in plan.operations:
            if deadline is not None and time.monotonic() > deadline:
                raise MirrorError(
                    f"Mirror deadline exceeded after {applied}/{plan.total} operations",
                    path=op.path,
                    kind="timeout",
                )
            try:
                self._apply(plan.target_root, op)
            except OSError as e:
                raise MirrorError(
                    f"{op.kind} failed: {e.strerror or e}",
                    path=op.path,
                    kind=_error_kind(e),
                ) from e
            applied += 1
            logger.debug(f"MIRROR {op.kind} {op.path}")

        return MirrorResult(changed=True, applied=applied)

    def _apply(self, target_root: Path, op: MirrorOperation) -> None:
        dest = target_root / op.path
        if op.kind == "delete":
            _remove(dest)
            return

        dest.parent.mkdir(parents=True, exist_ok=True)
        if op.entry_type == DIR:
            _clear_for(dest, DIR)
            dest.mkdir(exist_ok=True)
        elif op.entry_type == SYMLINK:
            _write_symlink(os.readlink(op.source), dest)
        else:
            _write_file(op.source, dest, op.mode)

    def sync(self, source_root: Path, target_root: Path) -> MirrorResult:
        """Compute and apply a plan in one step."""
        return self.apply_plan(self.compute_plan(source_root, target_root))
