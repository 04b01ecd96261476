"""
Slack notification for stale and closed merge requests.

Authors are resolved to Slack users by e-mail, invited to the cleanup
channel and mentioned in a summary message built from Block Kit sections.
"""

import logging
from typing import Callable, Dict, List, Optional

import requests
from jinja2 import Template


logger = logging.getLogger(__name__)

SLACK_API_URL = 'https://slack.com/api'
DEFAULT_TIMEOUT = 30

# Block Kit limits
SLACK_BLOCK_TEXT_LIMIT = 3000
SLACK_MAX_BLOCKS = 50
MAX_SLACK_CHARS = 39000

DEFAULT_STALE_HEADER = (
    "*Stale MRs (more than {{ stale_months }} months old without any updates):*\n"
    "These MRs will be automatically closed in {{ grace_months }} "
    "month{{ 's' if grace_months != 1 }} if they aren't updated"
)
DEFAULT_EXPIRED_HEADER = (
    "*MRs that have been closed (due to staleness or the associated JIRA issue being closed):*"
)

STALE_EMOJI = ':alarm_clock:'
EXPIRED_EMOJI = ':x:'


class SlackError(Exception):
    """Raised when a Slack Web API call fails."""


class SlackClient:
    """Thin wrapper over the Slack Web API methods used by the cleanup run."""

    def __init__(self, token: str, api_url: str = SLACK_API_URL, timeout: int = DEFAULT_TIMEOUT):
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers['Authorization'] = f'Bearer {token}'

    def _call(self, method: str, http_method: str = 'POST', **kwargs) -> dict:
        url = f"{self.api_url}/{method}"
        try:
            resp = self._session.request(http_method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise SlackError(f"slack - {method} http client error: {e}") from e

        if resp.status_code >= 400:
            raise SlackError(
                f"slack - {method} failed. Status code: {resp.status_code}. "
                f"Body: {(resp.text or '').strip()[:500]}"
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise SlackError(f"slack - {method} returned a non-JSON response") from e

        if not data.get('ok'):
            raise SlackError(f"slack - {method} error: {data.get('error', 'unknown_error')}")
        return data

    def lookup_user_id_by_email(self, email: str) -> str:
        """Return the Slack user ID registered with the given e-mail address."""
        data = self._call('users.lookupByEmail', http_method='GET', params={'email': email})
        return data['user']['id']

    def invite_users(self, channel_id: str, user_ids: List[str]) -> None:
        """
        Invite users to a channel.

        Slack answers with an error when every invited user is already a
        member, so callers treat failures here as non-fatal.
        """
        self._call('conversations.invite', json={
            'channel': channel_id,
            'users': ','.join(user_ids),
        })

    def post_message(self, channel_id: str, blocks: List[dict], text: str) -> None:
        """Post a Block Kit message with a plain-text fallback."""
        self._call('chat.postMessage', json={
            'channel': channel_id,
            'blocks': blocks,
            'text': text,
        })


def resolve_slack_user_ids(slack: SlackClient, merge_requests: List[dict], email_domain: str) -> Dict[str, str]:
    """
    Map merge request author usernames to Slack user IDs.

    Usernames are assumed to match the local part of the author's company
    e-mail address. Lookup failures are logged and the author is left out.

    Args:
        slack: Slack client
        merge_requests: MR info dictionaries (stale and expired)
        email_domain: Domain appended to usernames, e.g. "example.com"

    Returns:
        Dictionary of author username to Slack user ID
    """
    user_ids = {}
    failed = set()
    for mr in merge_requests:
        username = mr.get('author_username')
        if not username or username in user_ids or username in failed:
            continue

        email = f"{username}@{email_domain}"
        try:
            user_ids[username] = slack.lookup_user_id_by_email(email)
        except SlackError as e:
            logger.warning(f"Could not look up Slack user for {email}: {e}. Continuing.")
            failed.add(username)

    logger.info(f"Resolved {len(user_ids)} of {len(user_ids) + len(failed)} authors to Slack users")
    return user_ids


def invite_users_to_channel(
    slack: SlackClient,
    user_ids: Dict[str, str],
    channel_id: str,
    dry_run: bool = False
) -> bool:
    """
    Invite the resolved authors to the cleanup channel.

    Returns:
        True if the invite was sent (or would have been in dry-run mode)
    """
    ids = sorted(set(user_ids.values()))
    if not ids:
        logger.info("No Slack users to invite")
        return False

    if dry_run:
        logger.info(f"[DRY RUN] Would invite {len(ids)} user(s) to channel {channel_id}")
        return True

    try:
        slack.invite_users(channel_id, ids)
    except SlackError as e:
        logger.warning(
            f"Error inviting user IDs <{','.join(ids)}> to channel <{channel_id}>: {e}. Continuing."
        )
        return False

    logger.info(f"Invited {len(ids)} user(s) to channel {channel_id}")
    return True


def escape_mrkdwn(text: str) -> str:
    """Escape the characters Slack treats as control sequences."""
    return text.replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')


def format_mr_line(
    emoji: str,
    mr: dict,
    user_ids: Dict[str, str],
    issue_url_for: Optional[Callable[[str], str]] = None
) -> str:
    """Format a single merge request as a Slack mrkdwn line."""
    title = escape_mrkdwn(mr.get('display_title') or mr.get('title', ''))
    line = f"{emoji} <{mr['web_url']}|!{mr['iid']} {title}>"

    issue_key = mr.get('issue_key')
    if issue_key and issue_url_for:
        line += f" [<{issue_url_for(issue_key)}|{issue_key}>]"

    username = mr.get('author_username') or 'Unknown'
    if username in user_ids:
        line += f" - <@{user_ids[username]}>"
    else:
        line += f" - {escape_mrkdwn(username)}"
    return line


def chunk_section_text(lines: List[str]) -> List[str]:
    """Join lines into section texts that stay below the Block Kit text limit."""
    chunks = []
    current = []
    current_len = 0
    for line in lines:
        if len(line) > SLACK_BLOCK_TEXT_LIMIT:
            line = line[:SLACK_BLOCK_TEXT_LIMIT - 3] + '...'
        # +1 for the joining newline
        added = len(line) + (1 if current else 0)
        if current and current_len + added > SLACK_BLOCK_TEXT_LIMIT:
            chunks.append('\n'.join(current))
            current = []
            current_len = 0
            added = len(line)
        current.append(line)
        current_len += added
    if current:
        chunks.append('\n'.join(current))
    return chunks


def _section(text: str) -> dict:
    return {'type': 'section', 'text': {'type': 'mrkdwn', 'text': text}}


def build_message_blocks(
    stale_mrs: List[dict],
    expired_mrs: List[dict],
    user_ids: Dict[str, str],
    issue_url_for: Optional[Callable[[str], str]] = None,
    stale_months: int = 2,
    expired_months: int = 3,
    slack_config: Optional[dict] = None
) -> List[dict]:
    """
    Build the Block Kit sections for the cleanup summary.

    Args:
        stale_mrs: MRs that will be closed if they stay inactive
        expired_mrs: MRs that were closed in this run
        user_ids: Author username to Slack user ID mapping
        issue_url_for: Callable returning the web URL of an issue key
        stale_months: Stale threshold, rendered into the stale header
        expired_months: Expiry threshold, rendered into the stale header
        slack_config: Optional 'slack' config section with header overrides

    Returns:
        List of Block Kit blocks, capped at the Slack block limit
    """
    slack_config = slack_config or {}
    context = {
        'stale_months': stale_months,
        'expired_months': expired_months,
        'grace_months': expired_months - stale_months,
    }

    blocks = []
    groups = [
        (stale_mrs, slack_config.get('stale_header') or DEFAULT_STALE_HEADER, STALE_EMOJI),
        (expired_mrs, slack_config.get('expired_header') or DEFAULT_EXPIRED_HEADER, EXPIRED_EMOJI),
    ]
    for mrs, header, emoji in groups:
        if not mrs:
            continue
        blocks.append(_section(Template(header).render(**context)))
        lines = [format_mr_line(emoji, mr, user_ids, issue_url_for) for mr in mrs]
        for chunk in chunk_section_text(lines):
            blocks.append(_section(chunk))

    if len(blocks) > SLACK_MAX_BLOCKS:
        logger.warning(f"Message has {len(blocks)} blocks; truncating to {SLACK_MAX_BLOCKS}")
        blocks = blocks[:SLACK_MAX_BLOCKS - 1] + [_section('_[truncated]_')]
    return blocks


def blocks_to_text(blocks: List[dict]) -> str:
    """Plain-text rendition of the blocks, used as notification fallback and in logs."""
    return '\n'.join(block['text']['text'] for block in blocks)


def post_summary(
    slack: SlackClient,
    channel_id: str,
    blocks: List[dict],
    dry_run: bool = False
) -> bool:
    """
    Post the cleanup summary to the channel.

    Raises:
        SlackError: If the message cannot be posted
    """
    if not blocks:
        logger.info("Nothing to post to Slack")
        return False

    text = blocks_to_text(blocks)
    if len(text) > MAX_SLACK_CHARS:
        text = text[:MAX_SLACK_CHARS - 100] + '\n\n[truncated]'
    if dry_run:
        logger.info(f"[DRY RUN] Would post message to channel {channel_id}:\n{text}")
        return True

    slack.post_message(channel_id, blocks, text)
    logger.info(f"Posted cleanup summary to channel {channel_id}")
    return True
