"""Repository fetching — clone, locate the build specification, archive."""

from repobox.fetcher.git_fetcher import GitFetcher, find_build_spec, repo_name_from_url

__all__ = [
    "GitFetcher",
    "find_build_spec",
    "repo_name_from_url",
]
