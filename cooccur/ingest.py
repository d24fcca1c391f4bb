"""
Corpus batch driver.

Walks a corpus directory and observes every file, one sentence per
non-blank line. Each file is moved into an in-process directory while it
is being counted and then into a completed directory, keeping its path
relative to the corpus root. A run that was interrupted leaves its file in
the in-process directory; the next run submits it again before the rest
of the corpus. Sentences counted before the interruption are counted a
second time.

Usage:
    with Session(StatsConfig.from_env()) as s:
        report = submit_corpus(s, Path("corpus"), Path("staging"), Path("done"))
"""

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional
import logging
import shutil
import time

from .session import Session

logger = logging.getLogger(__name__)


@dataclass
class IngestReport:
    files: int = 0
    sentences: int = 0
    skipped: int = 0
    elapsed: float = 0.0

    def __str__(self) -> str:
        return (f"{self.files} files, {self.sentences} sentences "
                f"({self.skipped} skipped) in {self.elapsed:.2f}s")


def read_text(path: Path) -> str:
    """Read a corpus file as UTF-8, falling back to latin-1."""
    try:
        return path.read_text(encoding='utf-8')
    except UnicodeDecodeError:
        return path.read_text(encoding='latin-1')


def iter_sentences(text: str) -> Iterator[str]:
    for line in text.splitlines():
        line = line.strip()
        if line:
            yield line


def corpus_files(corpus_dir: Path, extensions: Optional[List[str]] = None) -> List[Path]:
    """Regular files under ``corpus_dir``, sorted; all suffixes when none given."""
    return sorted(
        f for f in corpus_dir.rglob('*')
        if f.is_file() and (not extensions or f.suffix in extensions)
    )


def _relocate(path: Path, src_root: Path, dst_root: Path) -> Path:
    target = dst_root / path.relative_to(src_root)
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(path), str(target))
    return target


def submit_file(session: Session, path: Path) -> tuple:
    """Observe one file. Returns (observed, skipped) sentence counts."""
    return session.observe_many(iter_sentences(read_text(path)))


def submit_corpus(session: Session, corpus_dir: Path, in_process_dir: Path,
                  completed_dir: Path, extensions: Optional[List[str]] = None,
                  max_files: Optional[int] = None) -> IngestReport:
    """
    Observe every file of a corpus directory.

    Files still sitting in ``in_process_dir`` from an interrupted run are
    submitted first. Malformed sentences are skipped and counted. A store
    failure stops the run with the current file left in ``in_process_dir``.

    Raises:
        StoreUnavailableError: the store went away mid-run
    """
    corpus_dir = Path(corpus_dir)
    in_process_dir = Path(in_process_dir)
    completed_dir = Path(completed_dir)

    leftover = corpus_files(in_process_dir, extensions) if in_process_dir.is_dir() else []
    files = [(path, in_process_dir) for path in leftover]
    files += [(path, corpus_dir) for path in corpus_files(corpus_dir, extensions)]
    if max_files:
        files = files[:max_files]

    report = IngestReport()
    start = time.time()
    for i, (path, root) in enumerate(files):
        if root == in_process_dir:
            logger.warning("Resubmitting interrupted file %s", path)
            staged = path
        else:
            staged = _relocate(path, corpus_dir, in_process_dir)
        observed, skipped = submit_file(session, staged)
        _relocate(staged, in_process_dir, completed_dir)

        report.files += 1
        report.sentences += observed
        report.skipped += skipped
        logger.info("[%d/%d] %s: %d sentences, %d skipped",
                    i + 1, len(files), path.name, observed, skipped)

    report.elapsed = time.time() - start
    logger.info("Submitted corpus %s: %s", corpus_dir, report)
    return report
