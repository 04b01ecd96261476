"""Tests for the Slack notifier."""

import unittest
from unittest.mock import MagicMock, patch

import requests

import slack_notifier
from slack_notifier import SlackClient, SlackError


def _response(status_code=200, json_data=None, text=''):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    if json_data is None:
        resp.json.side_effect = ValueError("No JSON")
    else:
        resp.json.return_value = json_data
    return resp


def _mr(iid, username='jane.doe', display_title='Add login page', issue_key=None):
    return {
        'iid': iid,
        'title': display_title,
        'display_title': display_title,
        'issue_key': issue_key,
        'web_url': f'https://gitlab.example.com/mr/{iid}',
        'author_username': username,
    }


class TestSlackClient(unittest.TestCase):
    """Tests for SlackClient Web API calls."""

    def setUp(self):
        self.client = SlackClient('xoxb-token')

    def test_sets_bearer_token(self):
        self.assertEqual(self.client._session.headers['Authorization'], 'Bearer xoxb-token')

    @patch.object(requests.Session, 'request')
    def test_lookup_user_id_by_email(self, mock_request):
        mock_request.return_value = _response(json_data={'ok': True, 'user': {'id': 'U123'}})

        result = self.client.lookup_user_id_by_email('jane.doe@example.com')

        self.assertEqual(result, 'U123')
        args, kwargs = mock_request.call_args
        self.assertEqual(args, ('GET', 'https://slack.com/api/users.lookupByEmail'))
        self.assertEqual(kwargs['params'], {'email': 'jane.doe@example.com'})

    @patch.object(requests.Session, 'request')
    def test_api_error_raises(self, mock_request):
        mock_request.return_value = _response(json_data={'ok': False, 'error': 'users_not_found'})

        with self.assertRaises(SlackError) as ctx:
            self.client.lookup_user_id_by_email('ghost@example.com')
        self.assertIn('users_not_found', str(ctx.exception))

    @patch.object(requests.Session, 'request')
    def test_http_error_raises(self, mock_request):
        mock_request.return_value = _response(status_code=429, text='rate limited')

        with self.assertRaises(SlackError) as ctx:
            self.client.post_message('C123', [], 'hello')
        self.assertIn('429', str(ctx.exception))

    @patch.object(requests.Session, 'request')
    def test_transport_error_raises(self, mock_request):
        mock_request.side_effect = requests.Timeout("timed out")

        with self.assertRaises(SlackError):
            self.client.invite_users('C123', ['U1'])

    @patch.object(requests.Session, 'request')
    def test_invite_users_joins_ids(self, mock_request):
        mock_request.return_value = _response(json_data={'ok': True})

        self.client.invite_users('C123', ['U1', 'U2'])

        args, kwargs = mock_request.call_args
        self.assertEqual(args, ('POST', 'https://slack.com/api/conversations.invite'))
        self.assertEqual(kwargs['json'], {'channel': 'C123', 'users': 'U1,U2'})

    @patch.object(requests.Session, 'request')
    def test_post_message(self, mock_request):
        mock_request.return_value = _response(json_data={'ok': True, 'ts': '1.2'})
        blocks = [{'type': 'section', 'text': {'type': 'mrkdwn', 'text': 'hi'}}]

        self.client.post_message('C123', blocks, 'hi')

        kwargs = mock_request.call_args[1]
        self.assertEqual(kwargs['json'], {'channel': 'C123', 'blocks': blocks, 'text': 'hi'})


class TestResolveSlackUserIds(unittest.TestCase):
    """Tests for resolve_slack_user_ids function."""

    def test_looks_up_each_author_once(self):
        slack = MagicMock()
        slack.lookup_user_id_by_email.side_effect = lambda email: {
            'jane.doe@example.com': 'U1',
            'john.roe@example.com': 'U2',
        }[email]
        mrs = [_mr(1, 'jane.doe'), _mr(2, 'john.roe'), _mr(3, 'jane.doe')]

        result = slack_notifier.resolve_slack_user_ids(slack, mrs, 'example.com')

        self.assertEqual(result, {'jane.doe': 'U1', 'john.roe': 'U2'})
        self.assertEqual(slack.lookup_user_id_by_email.call_count, 2)

    def test_lookup_failures_are_skipped(self):
        slack = MagicMock()
        slack.lookup_user_id_by_email.side_effect = [SlackError("users_not_found"), 'U2']
        mrs = [_mr(1, 'ghost'), _mr(2, 'john.roe'), _mr(3, 'ghost')]

        result = slack_notifier.resolve_slack_user_ids(slack, mrs, 'example.com')

        self.assertEqual(result, {'john.roe': 'U2'})
        self.assertEqual(slack.lookup_user_id_by_email.call_count, 2)

    def test_authors_without_username_are_ignored(self):
        slack = MagicMock()

        result = slack_notifier.resolve_slack_user_ids(slack, [_mr(1, '')], 'example.com')

        self.assertEqual(result, {})
        slack.lookup_user_id_by_email.assert_not_called()


class TestInviteUsersToChannel(unittest.TestCase):
    """Tests for invite_users_to_channel function."""

    def test_invites_unique_ids(self):
        slack = MagicMock()

        result = slack_notifier.invite_users_to_channel(slack, {'a': 'U2', 'b': 'U1', 'c': 'U2'}, 'C123')

        self.assertTrue(result)
        slack.invite_users.assert_called_once_with('C123', ['U1', 'U2'])

    def test_no_users_is_a_no_op(self):
        slack = MagicMock()

        self.assertFalse(slack_notifier.invite_users_to_channel(slack, {}, 'C123'))
        slack.invite_users.assert_not_called()

    def test_dry_run_does_not_invite(self):
        slack = MagicMock()

        self.assertTrue(slack_notifier.invite_users_to_channel(slack, {'a': 'U1'}, 'C123', dry_run=True))
        slack.invite_users.assert_not_called()

    def test_invite_failure_is_not_fatal(self):
        slack = MagicMock()
        slack.invite_users.side_effect = SlackError("already_in_channel")

        self.assertFalse(slack_notifier.invite_users_to_channel(slack, {'a': 'U1'}, 'C123'))


class TestFormatMrLine(unittest.TestCase):
    """Tests for format_mr_line function."""

    def test_full_line(self):
        mr = _mr(42, issue_key='WEB-1')

        line = slack_notifier.format_mr_line(
            ':x:', mr, {'jane.doe': 'U1'},
            lambda key: f'https://jira.example.com/browse/{key}'
        )

        self.assertEqual(
            line,
            ':x: <https://gitlab.example.com/mr/42|!42 Add login page> '
            '[<https://jira.example.com/browse/WEB-1|WEB-1>] - <@U1>'
        )

    def test_unknown_user_falls_back_to_username(self):
        line = slack_notifier.format_mr_line(':x:', _mr(42), {})
        self.assertTrue(line.endswith(' - jane.doe'))

    def test_issue_link_omitted_without_key(self):
        line = slack_notifier.format_mr_line(':x:', _mr(42), {}, lambda key: 'unused')
        self.assertNotIn('[', line)

    def test_title_is_escaped(self):
        line = slack_notifier.format_mr_line(':x:', _mr(1, display_title='Use <T> & co'), {})
        self.assertIn('Use &lt;T&gt; &amp; co', line)


class TestChunkSectionText(unittest.TestCase):
    """Tests for chunk_section_text function."""

    def test_short_lines_fit_one_chunk(self):
        self.assertEqual(slack_notifier.chunk_section_text(['a', 'b']), ['a\nb'])

    def test_splits_at_limit(self):
        line = 'x' * 1000
        chunks = slack_notifier.chunk_section_text([line] * 5)

        # two 1000-char lines plus the joining newline fit; a third does not
        self.assertEqual(len(chunks), 3)
        for chunk in chunks:
            self.assertLessEqual(len(chunk), slack_notifier.SLACK_BLOCK_TEXT_LIMIT)
        self.assertEqual(sum(chunk.count('x') for chunk in chunks), 5000)

    def test_overlong_line_is_truncated(self):
        chunks = slack_notifier.chunk_section_text(['y' * 5000])

        self.assertEqual(len(chunks), 1)
        self.assertEqual(len(chunks[0]), slack_notifier.SLACK_BLOCK_TEXT_LIMIT)


class TestBuildMessageBlocks(unittest.TestCase):
    """Tests for build_message_blocks function."""

    def test_both_sections(self):
        blocks = slack_notifier.build_message_blocks(
            [_mr(1)], [_mr(2)], {'jane.doe': 'U1'}, stale_months=2, expired_months=3
        )

        self.assertEqual(len(blocks), 4)
        texts = [block['text']['text'] for block in blocks]
        self.assertIn('more than 2 months old', texts[0])
        self.assertIn('closed in 1 month if', texts[0])
        self.assertTrue(texts[1].startswith(':alarm_clock: '))
        self.assertIn('have been closed', texts[2])
        self.assertTrue(texts[3].startswith(':x: '))
        for block in blocks:
            self.assertEqual(block['type'], 'section')
            self.assertEqual(block['text']['type'], 'mrkdwn')

    def test_only_stale_section(self):
        blocks = slack_notifier.build_message_blocks([_mr(1)], [], {}, stale_months=1, expired_months=4)

        self.assertEqual(len(blocks), 2)
        self.assertIn('closed in 3 months if', blocks[0]['text']['text'])

    def test_no_items_no_blocks(self):
        self.assertEqual(slack_notifier.build_message_blocks([], [], {}), [])

    def test_custom_headers(self):
        blocks = slack_notifier.build_message_blocks(
            [_mr(1)], [_mr(2)], {},
            slack_config={
                'stale_header': 'Idle for {{ stale_months }}+ months',
                'expired_header': 'Closed today',
            }
        )

        self.assertEqual(blocks[0]['text']['text'], 'Idle for 2+ months')
        self.assertEqual(blocks[2]['text']['text'], 'Closed today')

    def test_caps_block_count(self):
        mrs = [_mr(i, display_title='t' * 2900) for i in range(80)]

        blocks = slack_notifier.build_message_blocks(mrs, [], {})

        self.assertEqual(len(blocks), slack_notifier.SLACK_MAX_BLOCKS)
        self.assertIn('truncated', blocks[-1]['text']['text'])


class TestPostSummary(unittest.TestCase):
    """Tests for post_summary function."""

    def setUp(self):
        self.blocks = slack_notifier.build_message_blocks([_mr(1)], [], {})

    def test_posts_blocks_with_fallback_text(self):
        slack = MagicMock()

        self.assertTrue(slack_notifier.post_summary(slack, 'C123', self.blocks))

        slack.post_message.assert_called_once_with(
            'C123', self.blocks, slack_notifier.blocks_to_text(self.blocks)
        )

    def test_dry_run_does_not_post(self):
        slack = MagicMock()

        self.assertTrue(slack_notifier.post_summary(slack, 'C123', self.blocks, dry_run=True))
        slack.post_message.assert_not_called()

    def test_nothing_to_post(self):
        slack = MagicMock()

        self.assertFalse(slack_notifier.post_summary(slack, 'C123', []))
        slack.post_message.assert_not_called()

    def test_post_failure_propagates(self):
        slack = MagicMock()
        slack.post_message.side_effect = SlackError("channel_not_found")

        with self.assertRaises(SlackError):
            slack_notifier.post_summary(slack, 'C123', self.blocks)


if __name__ == '__main__':
    unittest.main()
