from unittest import mock

from django.test import SimpleTestCase

from armada_director.agents import HttpAgentClient
from armada_director.errors import AgentError


def _reply(value):
    response = mock.Mock(status_code=200)
    response.json.return_value = {"value": value}
    return response


@mock.patch("armada_director.agents.requests.post")
class HttpAgentFetchLogsTests(SimpleTestCase):
    def test_bundle_is_polled_until_the_agent_finishes(self, post):
        post.side_effect = [
            _reply({"agent_task_id": "t-1", "state": "running"}),
            _reply({"blobstore_id": "blob-9"}),
        ]
        client = HttpAgentClient("https://10.0.0.2:6868", poll_interval=0)
        self.assertEqual(client.fetch_logs("job", ["*.log"]), {"blobstore_id": "blob-9"})
        first, second = post.call_args_list
        self.assertEqual(first[1]["json"]["method"], "fetch_logs")
        self.assertEqual(first[1]["json"]["arguments"], ["job", ["*.log"]])
        self.assertEqual(second[1]["json"]["arguments"], ["t-1"])

    def test_reply_without_bundle_is_an_error(self, post):
        post.return_value = _reply({"state": "done"})
        with self.assertRaises(AgentError):
            HttpAgentClient("https://10.0.0.2:6868").fetch_logs("agent")
