import git
from pathlib import Path
from typing import Optional
from .errors import CheckoutFailed
from .logger_setup import logger

class SCMHandler:
    def __init__(self, repo_url: str, branch: str = 'main'):
        self.repo_url = repo_url
        self.branch = branch

    def checkout(self, target_dir: Path, revision: Optional[str] = None) -> str:
        """Clones the branch into target_dir (or updates it) and checks out `revision`.

        Returns the checked-out commit hash. Raises CheckoutFailed.
        """
        try:
            if not target_dir.exists() or not any(target_dir.iterdir()):
                logger.info(f"Cloning {self.repo_url} (branch: {self.branch}) into {target_dir}...")
                repo = git.Repo.clone_from(self.repo_url, target_dir, branch=self.branch)
            else:
                logger.info(f"Updating existing repo in {target_dir}...")
                repo = git.Repo(target_dir)
                repo.remotes.origin.fetch()
                repo.git.checkout(self.branch)
                repo.git.reset('--hard', f'origin/{self.branch}')

            if revision:
                repo.git.checkout('--detach', revision)
            commit = repo.head.commit.hexsha
            if revision and not commit.startswith(revision):
                raise CheckoutFailed(f"Checked out {commit} but revision {revision} was requested")
            logger.info(f"Checkout complete at {commit}.")
            return commit
        except git.exc.GitCommandError as e:
            raise CheckoutFailed(f"Git command error for {self.repo_url}: {e}")
        except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError) as e:
            raise CheckoutFailed(f"Invalid repository at {target_dir}: {e}")

    def get_latest_commit_hash(self) -> Optional[str]:
        """Asks the remote for the head of the configured branch using ls-remote."""
        g = git.cmd.Git()
        try:
            remote_output = g.ls_remote(self.repo_url, f"refs/heads/{self.branch}")
        except git.exc.GitCommandError as e:
            logger.error(f"Git ls-remote command error for {self.repo_url} branch {self.branch}: {e}")
            return None
        if remote_output:
            # Output: <hash>\trefs/heads/<branch>
            return remote_output.split('\t')[0]
        logger.warning(f"No output from ls-remote for {self.repo_url} branch {self.branch}.")
        return None
