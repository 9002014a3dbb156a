import asyncio
import logging
import os
import re
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from backport_bot.config import Settings
from backport_bot.errors import RepositoryCacheCorrupt, TransportError

TARGET_REMOTE = 'target_repo'
CACHE_DIR_NAME = 'cache.git'
URL_CREDENTIALS = re.compile(r'://[^/@\s]+@')


class LockRegistry:
    """
    One asyncio.Lock per key, created on first use.

    Locks are kept for the lifetime of the process and never collected, the number of
    repositories a bot serves is small.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)


class RepositoryCache:
    """
    Keeps one bare clone per repository and hands out throwaway working copies of it.

    Refreshing the bare clone and cloning a working copy from it happen under the
    repository's lock. Everything done in the working copy afterwards is not serialized.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.base_dir = Path(settings.working_dir)
        self.locks = LockRegistry()

    def repo_dir(self, slug: str) -> Path:
        return self.base_dir.joinpath(*slug.split('/'))

    def cache_path(self, slug: str) -> Path:
        return self.repo_dir(slug) / CACHE_DIR_NAME

    async def prepare_working_copy(self, slug: str, token: str) -> Path:
        url = self.settings.remote_url(slug, token)
        async with self.locks.get(slug):
            await asyncio.to_thread(self._refresh_cache, slug, url)
            working_copy = await asyncio.to_thread(self._clone_working_copy, slug)
        try:
            await asyncio.to_thread(self._configure_working_copy, working_copy, url)
        except Exception:
            await asyncio.to_thread(remove_working_copy, working_copy)
            raise
        logging.info(f"Prepared working copy of {slug} at {working_copy}")
        return working_copy

    @asynccontextmanager
    async def working_copy(self, slug: str, token: str) -> AsyncIterator[Path]:
        path = await self.prepare_working_copy(slug, token)
        try:
            yield path
        finally:
            await asyncio.to_thread(remove_working_copy, path)

    def _open_cache(self, path: Path) -> Repo:
        try:
            repo = Repo(path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise RepositoryCacheCorrupt(str(path), type(e).__name__) from e
        if not repo.bare:
            raise RepositoryCacheCorrupt(str(path), 'repository is not bare')
        return repo

    def _refresh_cache(self, slug: str, url: str):
        path = self.cache_path(slug)
        try:
            cache = self._open_cache(path)
        except RepositoryCacheCorrupt as e:
            if path.exists():
                logging.warning(f"{e} - rebuilding it")
                shutil.rmtree(path, ignore_errors=True)
            cache = None

        try:
            if cache is None:
                logging.info(f"Cloning {slug} into cache {path}")
                path.parent.mkdir(parents=True, exist_ok=True)
                cache = Repo.clone_from(url, path, bare=True)
                cache.git.config('remote.origin.fetch', '+refs/heads/*:refs/heads/*')
            else:
                logging.info(f"Fetching updates for cached {slug}")
                cache.git.remote('set-url', 'origin', url)
                cache.git.fetch('origin', prune=True)
        except GitCommandError as e:
            raise TransportError(redact_credentials(f"Failed to refresh cache of {slug}: {e}")) from e

    def _clone_working_copy(self, slug: str) -> Path:
        repo_dir = self.repo_dir(slug)
        repo_dir.mkdir(parents=True, exist_ok=True)
        working_copy = Path(tempfile.mkdtemp(prefix='tmp-', dir=repo_dir))
        try:
            Repo.clone_from(str(self.cache_path(slug)), working_copy)
        except GitCommandError as e:
            shutil.rmtree(working_copy, ignore_errors=True)
            raise TransportError(f"Failed to create working copy of {slug}: {e}") from e
        return working_copy

    def _configure_working_copy(self, working_copy: Path, url: str):
        repo = Repo(working_copy)
        with repo.config_writer() as config:
            config.set_value('user', 'email', self.settings.committer_email)
            config.set_value('user', 'name', self.settings.committer_name)
            config.set_value('commit', 'gpgsign', 'false')
        try:
            repo.create_remote(TARGET_REMOTE, url)
            repo.git.fetch(TARGET_REMOTE)
        except GitCommandError as e:
            raise TransportError(redact_credentials(f"Failed to fetch {TARGET_REMOTE} into {working_copy}: {e}")) from e


def remove_working_copy(path: Path):
    shutil.rmtree(path, ignore_errors=True)
    patch_file = f"{path}.patch"
    if os.path.exists(patch_file):
        os.remove(patch_file)


def redact_credentials(text: str) -> str:
    """Hide the user:token part of any URL in `text`."""
    return URL_CREDENTIALS.sub('://***@', text)
