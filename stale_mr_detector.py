#!/usr/bin/env python3
"""
Stale Merge Request and Branch Cleanup

This script cleans up abandoned work in GitLab or GitHub projects:
- Deletes non-protected branches without commits for a long time
- Closes merge requests (pull requests on GitHub) that have not been updated
  for longer than the expiry period, or whose linked Jira issue is closed
- Tells the authors about stale and closed merge requests in a Slack channel

Merge request titles may reference a Jira issue with a trailing token such as
"Add login page [WEB-123]".

Supported platforms:
- GitLab (via python-gitlab)
- GitHub (via PyGithub)
"""

import argparse
import logging
import os
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import gitlab
import requests
import yaml
from dateutil.relativedelta import relativedelta
from github import Auth, Github, GithubException
from jinja2 import Template

import slack_notifier
from jira_client import JiraClient, JiraError
from slack_notifier import SlackClient, SlackError


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Default thresholds, in calendar months
DEFAULT_STALE_MR_MONTHS = 2
DEFAULT_EXPIRED_MR_MONTHS = 3
DEFAULT_STALE_BRANCH_MONTHS = 6

DEFAULT_CLOSED_STATUSES = ['Closed']
DEFAULT_DELETE_STALE_BRANCHES = True

# Page size used when listing branches and merge requests
MAX_PER_PAGE = 100

DEFAULT_CLOSE_COMMENT = (
    "🤖 This merge request has been automatically closed by the repository "
    "maintenance bot because it has not been updated for {{ expired_months }} months "
    "or its linked issue has been closed. If this work is still needed, "
    "please reopen it or create a new merge request."
)

# Matches "Some title [PROJ-123]" at the end of a merge request title
MR_TITLE_REGEX = re.compile(r'^(.*?)\s*\[([A-Z0-9]+-[0-9]+)\]\s*$')

# (config section, key, environment variable)
ENV_SECRETS = [
    ('gitlab', 'private_token', 'GITLAB_TOKEN'),
    ('github', 'token', 'GITHUB_TOKEN'),
    ('jira', 'token', 'JIRA_TOKEN'),
    ('slack', 'token', 'SLACK_TOKEN'),
]


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""


# =============================================================================
# Configuration
# =============================================================================


def apply_env_overrides(config: dict) -> dict:
    """
    Fill in secrets from environment variables.

    A value present in the configuration file always wins; the environment is
    only consulted for sections that exist but lack the secret.

    Args:
        config: Configuration dictionary, updated in place

    Returns:
        The same configuration dictionary
    """
    if not isinstance(config, dict):
        return config
    for section, key, env_var in ENV_SECRETS:
        value = os.environ.get(env_var)
        if not value or not isinstance(config.get(section), dict) or config[section].get(key):
            continue
        if section == 'jira' and config['jira'].get('email') and config['jira'].get('api_token'):
            logger.debug(f"Ignoring {env_var}: Jira basic auth is configured in the file")
            continue
        config[section][key] = value
        logger.debug(f"Using {env_var} from environment for {section}.{key}")
    return config


def _get_months(config: dict, key: str, default: int) -> int:
    value = config.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(f"'{key}' must be a positive integer number of months, got {value!r}")
    return value


def _get_section(config: dict, section: str) -> dict:
    if section not in config:
        raise ConfigurationError(f"Missing '{section}' section in configuration")
    if not isinstance(config[section], dict):
        raise ConfigurationError(f"'{section}' section must be a mapping, got {config[section]!r}")
    return config[section]


def validate_config(config: dict) -> None:
    """
    Validate that all required configuration keys are present.

    Supports both GitLab and GitHub platforms based on the 'platform' key.
    The 'jira' section is optional; without it merge requests only expire by
    age and issue keys are shown without links.

    Args:
        config: Configuration dictionary to validate

    Raises:
        ConfigurationError: If required keys are missing or values are invalid
    """
    if not config:
        raise ConfigurationError("Configuration is empty")
    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration must be a mapping, got {type(config).__name__}")

    platform = config.get('platform', 'gitlab')

    if platform not in ('gitlab', 'github'):
        raise ConfigurationError(
            f"Unsupported platform: '{platform}'. Must be 'gitlab' or 'github'."
        )

    if platform == 'github':
        if not _get_section(config, 'github').get('token'):
            raise ConfigurationError("Missing required GitHub config key: 'token'")
    else:
        gitlab_config = _get_section(config, 'gitlab')
        for key in ['url', 'private_token']:
            if not gitlab_config.get(key):
                raise ConfigurationError(f"Missing required GitLab config key: '{key}'")

    if not config.get('projects'):
        raise ConfigurationError("No projects configured. Add project IDs to 'projects' list.")

    slack = _get_section(config, 'slack')
    for key in ['token', 'channel_id']:
        if not slack.get(key):
            raise ConfigurationError(f"Missing required Slack config key: '{key}'")

    if not config.get('email_domain'):
        raise ConfigurationError(
            "Missing 'email_domain'. It is used to look up Slack users by e-mail."
        )

    if config.get('jira') is not None:
        jira = _get_section(config, 'jira')
        if not jira.get('url'):
            raise ConfigurationError("Missing required Jira config key: 'url'")
        if not jira.get('token') and not (jira.get('email') and jira.get('api_token')):
            raise ConfigurationError(
                "Jira credentials missing: set 'token', or 'email' and 'api_token'"
            )
        closed_statuses = jira.get('closed_statuses', DEFAULT_CLOSED_STATUSES)
        if (not isinstance(closed_statuses, list) or not closed_statuses
                or not all(isinstance(s, str) and s for s in closed_statuses)):
            raise ConfigurationError(
                f"'jira.closed_statuses' must be a list of status names, got {closed_statuses!r}"
            )
    else:
        logger.warning("No 'jira' section configured. Linked issue status will not be checked.")

    stale_months = _get_months(config, 'stale_mr_months', DEFAULT_STALE_MR_MONTHS)
    expired_months = _get_months(config, 'expired_mr_months', DEFAULT_EXPIRED_MR_MONTHS)
    _get_months(config, 'stale_branch_months', DEFAULT_STALE_BRANCH_MONTHS)
    if expired_months <= stale_months:
        raise ConfigurationError(
            f"'expired_mr_months' ({expired_months}) must be greater than "
            f"'stale_mr_months' ({stale_months})"
        )


def load_config(config_path: str) -> dict:
    """Load and validate configuration from a YAML file."""
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)
    apply_env_overrides(config)
    validate_config(config)
    return config


def create_gitlab_client(config: dict) -> gitlab.Gitlab:
    """Create and authenticate a GitLab client."""
    gl = gitlab.Gitlab(
        url=config['gitlab']['url'],
        private_token=config['gitlab']['private_token'],
        per_page=MAX_PER_PAGE
    )
    gl.auth()
    return gl


def create_github_client(config: dict) -> Github:
    """
    Create and authenticate a GitHub client.

    Args:
        config: Configuration dictionary with 'github' section

    Returns:
        Authenticated PyGithub Github client

    Raises:
        ConfigurationError: If authentication fails
    """
    auth = Auth.Token(config['github']['token'])
    api_url = config['github'].get('api_url')
    try:
        if api_url:
            gh = Github(auth=auth, base_url=api_url, per_page=MAX_PER_PAGE)
        else:
            gh = Github(auth=auth, per_page=MAX_PER_PAGE)
        # Verify authentication by fetching the authenticated user
        gh.get_user().login
    except GithubException as e:
        message = e.data.get('message', str(e)) if isinstance(e.data, dict) else str(e)
        raise ConfigurationError(f"Failed to authenticate with GitHub: {message}") from e
    return gh


def create_jira_client(config: dict) -> Optional[JiraClient]:
    """Create a Jira client, or None when no 'jira' section is configured."""
    jira = config.get('jira')
    if not jira:
        return None
    return JiraClient(
        base_url=jira['url'],
        token=jira.get('token'),
        email=jira.get('email'),
        api_token=jira.get('api_token'),
        api_version=jira.get('api_version', '2')
    )


def create_slack_client(config: dict) -> SlackClient:
    """Create a Slack Web API client."""
    return SlackClient(config['slack']['token'])


# =============================================================================
# Dates and titles
# =============================================================================


def parse_commit_date(date_value) -> datetime:
    """
    Parse a date returned by GitLab or GitHub into an aware datetime.

    Handles various ISO 8601 formats that GitLab might return, as well as the
    datetime objects PyGithub returns. Naive values are treated as UTC.

    Args:
        date_value: Date string in ISO 8601 format, or a datetime

    Returns:
        datetime object with timezone info

    Raises:
        ValueError: If the date cannot be parsed
    """
    if isinstance(date_value, datetime):
        result = date_value
    else:
        date_str = str(date_value)
        # Handle 'Z' suffix (UTC)
        if date_str.endswith('Z'):
            date_str = date_str[:-1] + '+00:00'

        try:
            result = datetime.fromisoformat(date_str)
        except ValueError:
            formats = [
                '%Y-%m-%dT%H:%M:%S%z',
                '%Y-%m-%dT%H:%M:%S.%f%z',
                '%Y-%m-%d %H:%M:%S%z',
            ]
            for fmt in formats:
                try:
                    result = datetime.strptime(date_str, fmt)
                    break
                except ValueError:
                    continue
            else:
                raise ValueError(f"Unable to parse date: {date_value}")

    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


def months_ago(months: int, now: Optional[datetime] = None) -> datetime:
    """Return the instant `months` calendar months before `now` (UTC by default)."""
    now = now or datetime.now(timezone.utc)
    return now - relativedelta(months=months)


def parse_mr_title(title: str) -> Tuple[str, Optional[str]]:
    """
    Split a merge request title into display title and Jira issue key.

    "Add login page [WEB-123]" gives ("Add login page", "WEB-123").
    Titles without a trailing issue token are returned unchanged with no key.
    """
    match = MR_TITLE_REGEX.match(title or '')
    if not match:
        return title, None
    return match.group(1).strip(), match.group(2)


def render_close_comment(config: dict) -> str:
    """
    Render the note posted on merge requests before they are closed.

    'close_comment' is a Jinja2 template receiving the MR thresholds; an empty
    value disables the note.
    """
    comment = config.get('close_comment')
    if comment is None:
        comment = DEFAULT_CLOSE_COMMENT
    if not comment:
        return ''
    return Template(comment).render(
        stale_months=config.get('stale_mr_months', DEFAULT_STALE_MR_MONTHS),
        expired_months=config.get('expired_mr_months', DEFAULT_EXPIRED_MR_MONTHS)
    )


# =============================================================================
# GitLab Functions
# =============================================================================


def get_branches(gl: gitlab.Gitlab, project_id) -> list:
    """
    Get all branches of a GitLab project.

    Uses pagination to handle repositories with many branches. Branches whose
    commit date cannot be parsed are kept with no date, so they never count
    as stale.

    Args:
        gl: Authenticated GitLab client
        project_id: GitLab project ID or path

    Returns:
        List of branch information dictionaries
    """
    project = gl.projects.get(project_id)
    branches = []

    for branch in project.branches.list(iterator=True, per_page=MAX_PER_PAGE):
        commit = branch.commit or {}
        try:
            committed_date = parse_commit_date(commit['committed_date'])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Could not parse commit date for branch {branch.name}: {e}")
            committed_date = None

        branches.append({
            'project_id': project_id,
            'branch_name': branch.name,
            'protected': bool(getattr(branch, 'protected', False)),
            'committed_date': committed_date,
        })

    logger.info(f"Branches found in '{project.name}': {len(branches)}")
    logger.debug(f"Name of branches: {','.join(b['branch_name'] for b in branches)}")
    return branches


def _build_mr_info_dict(project, mr) -> dict:
    """
    Build a standardized MR info dictionary from a GitLab MR object.

    Args:
        project: GitLab project object
        mr: GitLab merge request object

    Returns:
        Dictionary with MR information
    """
    author = mr.author if isinstance(getattr(mr, 'author', None), dict) else {}

    try:
        updated_at = parse_commit_date(mr.updated_at)
    except (ValueError, AttributeError, TypeError):
        updated_at = None

    display_title, issue_key = parse_mr_title(mr.title)

    return {
        'iid': mr.iid,
        'title': mr.title,
        'display_title': display_title,
        'issue_key': issue_key,
        'web_url': mr.web_url,
        'project_id': project.id,
        'author_username': author.get('username', ''),
        'updated_at': updated_at,
    }


def get_open_merge_requests(gl: gitlab.Gitlab, project_id) -> list:
    """
    Get all open merge requests of a GitLab project.

    Args:
        gl: Authenticated GitLab client
        project_id: GitLab project ID or path

    Returns:
        List of MR information dictionaries
    """
    project = gl.projects.get(project_id)
    mrs = [
        _build_mr_info_dict(project, mr)
        for mr in project.mergerequests.list(state='opened', iterator=True, per_page=MAX_PER_PAGE)
    ]

    logger.info(f"MRs found in '{project.name}': {len(mrs)}")
    logger.debug(f"Internal IDs of MRs: {_join_iids(mrs)}")
    return mrs


def close_merge_request(
    gl: gitlab.Gitlab,
    project_id,
    mr_iid: int,
    comment: Optional[str] = None,
    dry_run: bool = False
) -> bool:
    """
    Close a merge request.

    Args:
        gl: Authenticated GitLab client
        project_id: GitLab project ID
        mr_iid: Merge request internal ID
        comment: Optional note posted before closing
        dry_run: If True, don't actually close the MR

    Returns:
        True if MR was closed successfully, False otherwise
    """
    if dry_run:
        logger.info(f"[DRY RUN] Would close MR !{mr_iid} in project {project_id}")
        return True

    try:
        project = gl.projects.get(project_id)
        mr = project.mergerequests.get(mr_iid)

        if comment:
            mr.notes.create({'body': comment})
        mr.state_event = 'close'
        mr.save()

        logger.info(f"Successfully closed MR !{mr_iid} in project {project_id}")
        return True

    except gitlab.exceptions.GitlabError as e:
        logger.error(f"Error closing MR !{mr_iid} in project {project_id}: {e}")
        return False


def delete_branch(
    gl: gitlab.Gitlab,
    project_id,
    branch_name: str,
    dry_run: bool = False
) -> bool:
    """
    Delete a branch from a GitLab project.

    Args:
        gl: Authenticated GitLab client
        project_id: GitLab project ID
        branch_name: Name of the branch to delete
        dry_run: If True, don't actually delete the branch

    Returns:
        True if branch was deleted successfully, False otherwise
    """
    if dry_run:
        logger.info(
            f"[DRY RUN] Would delete branch '{branch_name}' from project {project_id}"
        )
        return True

    try:
        project = gl.projects.get(project_id)
        project.branches.delete(branch_name)
        logger.info(
            f"Successfully deleted branch '{branch_name}' from project {project_id}"
        )
        return True

    except gitlab.exceptions.GitlabError as e:
        logger.error(
            f"Error deleting branch '{branch_name}' from project {project_id}: {e}"
        )
        return False


# =============================================================================
# GitHub Platform Functions
# =============================================================================


def github_get_branches(gh: Github, repo_name: str) -> list:
    """
    Get all branches of a GitHub repository.

    Args:
        gh: Authenticated GitHub client
        repo_name: Repository name in "owner/repo" format

    Returns:
        List of branch information dictionaries
    """
    repo = gh.get_repo(repo_name)
    branches = []

    for branch in repo.get_branches():
        committed_date = None
        try:
            git_commit = branch.commit.commit
            committed_date = parse_commit_date(git_commit.committer.date)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Could not get commit date for branch {branch.name}: {e}")

        branches.append({
            'project_id': repo_name,
            'branch_name': branch.name,
            'protected': bool(getattr(branch, 'protected', False)),
            'committed_date': committed_date,
        })

    logger.info(f"Branches found in '{repo_name}': {len(branches)}")
    logger.debug(f"Name of branches: {','.join(b['branch_name'] for b in branches)}")
    return branches


def _build_github_pr_info_dict(repo_name: str, pr) -> dict:
    """Build a standardized MR info dictionary from a GitHub pull request."""
    try:
        updated_at = parse_commit_date(pr.updated_at)
    except (ValueError, AttributeError, TypeError):
        updated_at = None

    login = ''
    if pr.user is not None:
        login = pr.user.login or ''

    display_title, issue_key = parse_mr_title(pr.title)

    return {
        'iid': pr.number,
        'title': pr.title,
        'display_title': display_title,
        'issue_key': issue_key,
        'web_url': pr.html_url,
        'project_id': repo_name,
        'author_username': login,
        'updated_at': updated_at,
    }


def github_get_open_pull_requests(gh: Github, repo_name: str) -> list:
    """
    Get all open pull requests of a GitHub repository.

    Args:
        gh: Authenticated GitHub client
        repo_name: Repository name in "owner/repo" format

    Returns:
        List of MR information dictionaries
    """
    repo = gh.get_repo(repo_name)
    prs = [_build_github_pr_info_dict(repo_name, pr) for pr in repo.get_pulls(state='open')]

    logger.info(f"PRs found in '{repo_name}': {len(prs)}")
    logger.debug(f"Numbers of PRs: {_join_iids(prs)}")
    return prs


def github_close_pull_request(
    gh: Github,
    repo_name: str,
    pr_number: int,
    comment: Optional[str] = None,
    dry_run: bool = False
) -> bool:
    """
    Close a pull request on GitHub.

    Args:
        gh: Authenticated GitHub client
        repo_name: Repository name in "owner/repo" format
        pr_number: Pull request number
        comment: Optional comment posted before closing
        dry_run: If True, don't actually close the PR

    Returns:
        True if PR was closed successfully, False otherwise
    """
    if dry_run:
        logger.info(f"[DRY RUN] Would close PR #{pr_number} in repo {repo_name}")
        return True

    try:
        repo = gh.get_repo(repo_name)
        pr = repo.get_pull(pr_number)

        if comment:
            pr.create_issue_comment(comment)
        pr.edit(state='closed')

        logger.info(f"Successfully closed PR #{pr_number} in repo {repo_name}")
        return True

    except GithubException as e:
        logger.error(f"Error closing PR #{pr_number} in repo {repo_name}: {e}")
        return False


def github_delete_branch(
    gh: Github,
    repo_name: str,
    branch_name: str,
    dry_run: bool = False
) -> bool:
    """
    Delete a branch from a GitHub repository.

    Args:
        gh: Authenticated GitHub client
        repo_name: Repository name in "owner/repo" format
        branch_name: Name of the branch to delete
        dry_run: If True, don't actually delete the branch

    Returns:
        True if branch was deleted successfully, False otherwise
    """
    if dry_run:
        logger.info(
            f"[DRY RUN] Would delete branch '{branch_name}' from repo {repo_name}"
        )
        return True

    try:
        repo = gh.get_repo(repo_name)
        ref = repo.get_git_ref(f"heads/{branch_name}")
        ref.delete()
        logger.info(
            f"Successfully deleted branch '{branch_name}' from repo {repo_name}"
        )
        return True

    except GithubException as e:
        logger.error(
            f"Error deleting branch '{branch_name}' from repo {repo_name}: {e}"
        )
        return False


# =============================================================================
# Filtering
# =============================================================================


def _join_iids(mrs: list) -> str:
    return ','.join(str(mr['iid']) for mr in mrs)


def filter_stale_branches(branches: list, cutoff: datetime) -> list:
    """
    Get non-protected branches whose last commit is older than the cutoff.

    Args:
        branches: Branch information dictionaries
        cutoff: Branches last committed strictly before this are stale

    Returns:
        List of stale branch information dictionaries
    """
    stale = []
    for branch in branches:
        if branch['protected']:
            logger.debug(f"Skipping protected branch: {branch['branch_name']}")
            continue
        committed_date = branch.get('committed_date')
        if committed_date is not None and committed_date < cutoff:
            stale.append(branch)

    logger.info(f"Stale non-protected branches found: {len(stale)}")
    if stale:
        logger.info(f"Name of stale branches: {','.join(b['branch_name'] for b in stale)}")
    return stale


def find_expired_merge_requests(
    mrs: list,
    expired_cutoff: datetime,
    jira: Optional[JiraClient] = None,
    closed_statuses: Optional[List[str]] = None
) -> list:
    """
    Get merge requests that should be closed.

    An MR is expired when it was last updated before the cutoff. Otherwise,
    if its title references a Jira issue, the MR is expired when that issue
    has one of the closed statuses.

    Args:
        mrs: MR information dictionaries
        expired_cutoff: MRs last updated strictly before this are expired
        jira: Optional Jira client used to check linked issues
        closed_statuses: Jira status names treated as closed

    Returns:
        List of expired MR information dictionaries

    Raises:
        JiraError: If Jira fails for any reason other than a missing issue
    """
    closed_statuses = set(closed_statuses or DEFAULT_CLOSED_STATUSES)
    expired = []

    for mr in mrs:
        updated_at = mr.get('updated_at')
        if updated_at is not None and updated_at < expired_cutoff:
            expired.append(mr)
            continue

        issue_key = mr.get('issue_key')
        if not issue_key:
            logger.debug(f"No Jira issue ID attached to MR !{mr['iid']}. Skipping status check.")
            continue
        if jira is None:
            continue

        status = jira.get_issue_status(issue_key)
        if status is None:
            logger.info(
                f"Jira issue {issue_key} attached to MR !{mr['iid']} does not exist. "
                f"Skipping status check."
            )
            continue
        if status in closed_statuses:
            logger.debug(f"MR !{mr['iid']} is linked to {issue_key} with status '{status}'")
            expired.append(mr)

    logger.info(f"Expired MRs found: {len(expired)}")
    if expired:
        logger.info(f"Internal IDs of expired MRs: {_join_iids(expired)}")
    return expired


def filter_stale_merge_requests(mrs: list, stale_cutoff: datetime, expired: Optional[list] = None) -> list:
    """
    Get merge requests without updates since the cutoff that are not expired.

    Args:
        mrs: MR information dictionaries
        stale_cutoff: MRs last updated strictly before this are stale
        expired: Expired MRs, which are excluded from the result

    Returns:
        List of stale MR information dictionaries
    """
    expired_keys = {(mr['project_id'], mr['iid']) for mr in expired or []}
    stale = [
        mr for mr in mrs
        if mr.get('updated_at') is not None
        and mr['updated_at'] < stale_cutoff
        and (mr['project_id'], mr['iid']) not in expired_keys
    ]

    logger.info(f"Stale MRs found: {len(stale)}")
    if stale:
        logger.info(f"Internal IDs of stale MRs: {_join_iids(stale)}")
    return stale


# =============================================================================
# Orchestration
# =============================================================================


def _new_project_summary(project_id) -> dict:
    return {
        'project_id': project_id,
        'branches_found': 0,
        'stale_branches': 0,
        'branches_deleted': 0,
        'branches_failed': 0,
        'merge_requests_found': 0,
        'stale_merge_requests': [],
        'expired_merge_requests': [],
        'closed_merge_requests': [],
        'mrs_failed': 0,
    }


def clean_up_project(
    config: dict,
    client,
    project_id,
    jira: Optional[JiraClient] = None,
    now: Optional[datetime] = None,
    dry_run: bool = False,
    skip_branches: bool = False,
    skip_merge_requests: bool = False
) -> dict:
    """
    Run the cleanup pipeline for a single project.

    Steps: delete stale branches, then find stale and expired merge requests
    and close the expired ones.

    Args:
        config: Configuration dictionary
        client: Authenticated GitLab or GitHub client, matching config['platform']
        project_id: GitLab project ID/path or GitHub "owner/repo"
        jira: Optional Jira client
        now: Reference time for the thresholds
        dry_run: If True, don't delete or close anything
        skip_branches: If True, leave branches alone
        skip_merge_requests: If True, leave merge requests alone

    Returns:
        Project summary dictionary

    Raises:
        gitlab.exceptions.GitlabError, GithubException: If listing fails
        JiraError: If checking a linked issue fails
    """
    now = now or datetime.now(timezone.utc)
    is_github = config.get('platform', 'gitlab') == 'github'
    summary = _new_project_summary(project_id)

    if not skip_branches:
        if is_github:
            branches = github_get_branches(client, project_id)
        else:
            branches = get_branches(client, project_id)
        summary['branches_found'] = len(branches)

        branch_cutoff = months_ago(
            config.get('stale_branch_months', DEFAULT_STALE_BRANCH_MONTHS), now
        )
        stale_branches = filter_stale_branches(branches, branch_cutoff)
        summary['stale_branches'] = len(stale_branches)

        for branch in stale_branches:
            if is_github:
                deleted = github_delete_branch(client, project_id, branch['branch_name'], dry_run=dry_run)
            else:
                deleted = delete_branch(client, project_id, branch['branch_name'], dry_run=dry_run)
            if deleted:
                summary['branches_deleted'] += 1
            else:
                summary['branches_failed'] += 1

    if skip_merge_requests:
        return summary

    if is_github:
        mrs = github_get_open_pull_requests(client, project_id)
    else:
        mrs = get_open_merge_requests(client, project_id)
    summary['merge_requests_found'] = len(mrs)

    stale_months = config.get('stale_mr_months', DEFAULT_STALE_MR_MONTHS)
    expired_months = config.get('expired_mr_months', DEFAULT_EXPIRED_MR_MONTHS)
    closed_statuses = (config.get('jira') or {}).get('closed_statuses', DEFAULT_CLOSED_STATUSES)

    expired = find_expired_merge_requests(mrs, months_ago(expired_months, now), jira, closed_statuses)
    summary['expired_merge_requests'] = expired
    summary['stale_merge_requests'] = filter_stale_merge_requests(
        mrs, months_ago(stale_months, now), expired
    )

    comment = render_close_comment(config)

    for mr in expired:
        if is_github:
            closed = github_close_pull_request(client, project_id, mr['iid'], comment, dry_run=dry_run)
        else:
            closed = close_merge_request(client, project_id, mr['iid'], comment, dry_run=dry_run)
        if closed:
            summary['closed_merge_requests'].append(mr)
        else:
            summary['mrs_failed'] += 1

    return summary


def notify_authors(
    config: dict,
    stale_mrs: list,
    closed_mrs: list,
    jira: Optional[JiraClient] = None,
    slack: Optional[SlackClient] = None,
    dry_run: bool = False
) -> dict:
    """
    Tell the authors of stale and closed merge requests about them in Slack.

    Author lookup and channel invite failures are logged and skipped.

    Returns:
        Notification summary dictionary

    Raises:
        SlackError: If the summary message cannot be posted
    """
    slack = slack or create_slack_client(config)
    channel_id = config['slack']['channel_id']

    user_ids = slack_notifier.resolve_slack_user_ids(
        slack, stale_mrs + closed_mrs, config['email_domain']
    )
    slack_notifier.invite_users_to_channel(slack, user_ids, channel_id, dry_run=dry_run)

    blocks = slack_notifier.build_message_blocks(
        stale_mrs,
        closed_mrs,
        user_ids,
        issue_url_for=jira.browse_url if jira else None,
        stale_months=config.get('stale_mr_months', DEFAULT_STALE_MR_MONTHS),
        expired_months=config.get('expired_mr_months', DEFAULT_EXPIRED_MR_MONTHS),
        slack_config=config['slack']
    )
    posted = slack_notifier.post_summary(slack, channel_id, blocks, dry_run=dry_run)

    return {
        'slack_users_resolved': len(user_ids),
        'message_posted': posted,
    }


def run_cleanup(
    config: dict,
    dry_run: bool = False,
    skip_branches: bool = False,
    skip_merge_requests: bool = False
) -> dict:
    """
    Main function to clean up every configured project and notify authors.

    Args:
        config: Configuration dictionary
        dry_run: If True, only read; don't delete, close, invite or post
        skip_branches: If True, leave branches alone
        skip_merge_requests: If True, leave merge requests alone

    Returns:
        Summary of the run
    """
    if not config.get('delete_stale_branches', DEFAULT_DELETE_STALE_BRANCHES):
        skip_branches = True

    if config.get('platform', 'gitlab') == 'github':
        client = create_github_client(config)
    else:
        client = create_gitlab_client(config)
    jira = None if skip_merge_requests else create_jira_client(config)
    now = datetime.now(timezone.utc)

    summary = {
        'projects': 0,
        'branches_found': 0,
        'stale_branches': 0,
        'branches_deleted': 0,
        'branches_failed': 0,
        'merge_requests_found': 0,
        'stale_merge_requests': [],
        'expired_merge_requests': [],
        'closed_merge_requests': [],
        'mrs_failed': 0,
        'slack_users_resolved': 0,
        'message_posted': False,
    }

    for project_id in config['projects']:
        logger.info(f"Processing project {project_id}")
        project_summary = clean_up_project(
            config, client, project_id, jira=jira, now=now, dry_run=dry_run,
            skip_branches=skip_branches, skip_merge_requests=skip_merge_requests
        )
        summary['projects'] += 1
        for key in ['branches_found', 'stale_branches', 'branches_deleted', 'branches_failed',
                    'merge_requests_found', 'mrs_failed']:
            summary[key] += project_summary[key]
        for key in ['stale_merge_requests', 'expired_merge_requests', 'closed_merge_requests']:
            summary[key].extend(project_summary[key])

    if not summary['stale_merge_requests'] and not summary['closed_merge_requests']:
        logger.info("No stale or expired merge requests found. Skipping Slack notification.")
        return summary

    summary.update(notify_authors(
        config,
        summary['stale_merge_requests'],
        summary['closed_merge_requests'],
        jira=jira,
        dry_run=dry_run
    ))
    return summary


def log_summary(summary: dict, mr_label: str = "merge requests") -> None:
    """Log the end-of-run summary block."""
    logger.info("=" * 50)
    logger.info("Stale Branch/MR Cleanup Summary")
    logger.info("=" * 50)
    logger.info(f"Projects processed: {summary['projects']}")
    logger.info(f"Branches found: {summary['branches_found']}")
    logger.info(f"Stale branches: {summary['stale_branches']}")
    logger.info(f"Branches deleted: {summary['branches_deleted']}")
    logger.info(f"Branches failed: {summary['branches_failed']}")
    logger.info(f"Open {mr_label} found: {summary['merge_requests_found']}")
    logger.info(f"Stale {mr_label}: {len(summary['stale_merge_requests'])}")
    logger.info(f"Expired {mr_label}: {len(summary['expired_merge_requests'])}")
    logger.info(f"Closed {mr_label}: {len(summary['closed_merge_requests'])}")
    logger.info(f"Failed to close: {summary['mrs_failed']}")
    logger.info(f"Slack users resolved: {summary['slack_users_resolved']}")
    logger.info(f"Slack message posted: {'yes' if summary['message_posted'] else 'no'}")


def main() -> Optional[int]:
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(
        description='Delete stale branches, close expired merge/pull requests and '
                    'notify their authors in Slack. Supports both GitLab and GitHub platforms.'
    )
    parser.add_argument(
        '-c', '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Query everything but do not delete branches, close merge requests '
             'or post to Slack'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )
    parser.add_argument(
        '--skip-branches',
        action='store_true',
        help='Do not look for or delete stale branches'
    )
    parser.add_argument(
        '--skip-merge-requests',
        action='store_true',
        help='Do not look for, close or notify about merge/pull requests'
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {args.config}")
        return 1
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in configuration file: {e}")
        return 1
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.dry_run:
        logger.info("Dry run enabled: nothing will be deleted, closed or posted to Slack.")

    try:
        summary = run_cleanup(
            config,
            dry_run=args.dry_run,
            skip_branches=args.skip_branches,
            skip_merge_requests=args.skip_merge_requests
        )
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except gitlab.exceptions.GitlabError as e:
        logger.error(f"GitLab error: {e}")
        return 1
    except GithubException as e:
        logger.error(f"GitHub error: {e}")
        return 1
    except requests.RequestException as e:
        logger.error(f"Connection error: {e}")
        return 1
    except JiraError as e:
        logger.error(str(e))
        return 1
    except SlackError as e:
        logger.error(f"Error posting message to channel <{config['slack']['channel_id']}>: {e}")
        return 1

    mr_label = "pull requests" if config.get('platform', 'gitlab') == 'github' else "merge requests"
    log_summary(summary, mr_label)

    if summary['branches_failed'] or summary['mrs_failed']:
        return 1
    return 0


if __name__ == '__main__':
    exit(main())
