"""Tests for the Docker Engine client with a mocked HTTP session."""

import json
from unittest.mock import MagicMock

import pytest
import requests

from isengard.docker_engine import DockerEngine
from isengard.errors import EngineError


def _response(body=None, status=200, lines=None):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = body
    response.text = ''
    response.iter_lines.return_value = iter(lines or [])
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(
            f'{status} error', response=response)
    return response


@pytest.fixture
def client():
    engine = DockerEngine('/tmp/test-docker.sock')
    engine._session = MagicMock()
    return engine


def _paths(client):
    return [c[0][1] for c in client._session.request.call_args_list]


class TestListRunning:

    def test_snapshots_enriched_with_repo_digests(self, client):
        client._session.request.side_effect = [
            _response([{
                'Id': 'a' * 64,
                'Names': ['/web'],
                'Image': 'nginx:1.25',
                'ImageID': 'sha256:' + '1' * 64,
                'Labels': {'isengard.enable': 'true'},
                'State': 'running',
            }]),
            _response({'RepoDigests': ['nginx@sha256:AAA']}),
        ]

        [snap] = client.list_running()

        assert snap.name == 'web'
        assert snap.image == 'nginx:1.25'
        assert snap.repo_digests == ('nginx@sha256:AAA',)
        assert snap.labels == {'isengard.enable': 'true'}
        assert snap.short_id == 'a' * 12
        assert _paths(client) == [
            'http+unix://docker/containers/json',
            'http+unix://docker/images/sha256:' + '1' * 64 + '/json',
        ]

    def test_image_inspect_failure_leaves_digests_empty(self, client):
        client._session.request.side_effect = [
            _response([{'Id': 'b' * 64, 'Names': ['/db'], 'Image': 'postgres:16',
                        'ImageID': 'sha256:' + '2' * 64}]),
            _response({'message': 'No such image'}, status=404),
        ]

        [snap] = client.list_running()
        assert snap.repo_digests == ()
        assert snap.labels == {}


class TestErrors:

    def test_http_error_carries_status_and_message(self, client):
        client._session.request.return_value = _response(
            {'message': 'No such container: nope'}, status=404)

        with pytest.raises(EngineError) as exc_info:
            client.inspect_container('nope')

        assert exc_info.value.status_code == 404
        assert 'No such container' in str(exc_info.value)

    def test_transport_error(self, client):
        client._session.request.side_effect = requests.ConnectionError('socket missing')

        with pytest.raises(EngineError) as exc_info:
            client.version()
        assert exc_info.value.status_code is None


class TestContainerOperations:

    def test_stop_waits_beyond_grace_period(self, client):
        client._session.request.return_value = _response(status=204)
        client.stop_container('abc', 10)

        args, kwargs = client._session.request.call_args
        assert args == ('POST', 'http+unix://docker/containers/abc/stop')
        assert kwargs['params'] == {'t': 10}
        assert kwargs['timeout'] > 10

    def test_remove_is_forced(self, client):
        client._session.request.return_value = _response(status=204)
        client.remove_container('abc', force=True)
        assert client._session.request.call_args[1]['params'] == {'force': 'true'}

    def test_create_returns_id(self, client):
        client._session.request.return_value = _response(
            {'Id': 'new' + '0' * 61, 'Warnings': ['memory limit ignored']}, status=201)

        new_id = client.create_container('web', {'Image': 'nginx:1.26'})

        assert new_id == 'new' + '0' * 61
        args, kwargs = client._session.request.call_args
        assert args == ('POST', 'http+unix://docker/containers/create')
        assert kwargs['params'] == {'name': 'web'}
        assert kwargs['json'] == {'Image': 'nginx:1.26'}

    def test_connect_network(self, client):
        client._session.request.return_value = _response(status=200)
        client.connect_network('backend', 'abc', {'Aliases': ['db']})

        args, kwargs = client._session.request.call_args
        assert args[1] == 'http+unix://docker/networks/backend/connect'
        assert kwargs['json'] == {'Container': 'abc', 'EndpointConfig': {'Aliases': ['db']}}


class TestPullImage:

    def test_pull_returns_new_image_id(self, client):
        events = [json.dumps({'status': 'Pulling from library/nginx'}).encode(), b'',
                  json.dumps({'status': 'Digest: sha256:abc'}).encode()]
        client._session.request.side_effect = [
            _response(lines=events),
            _response({'Id': 'sha256:' + '3' * 64}),
        ]

        assert client.pull_image('nginx:1.26', 'e30=') == 'sha256:' + '3' * 64

        pull_args, pull_kwargs = client._session.request.call_args_list[0]
        assert pull_kwargs['params'] == {'fromImage': 'nginx', 'tag': '1.26'}
        assert pull_kwargs['headers'] == {'X-Registry-Auth': 'e30='}
        assert pull_kwargs['stream'] is True
        assert _paths(client)[1] == 'http+unix://docker/images/nginx:1.26/json'

    def test_anonymous_pull_sends_no_auth_header(self, client):
        client._session.request.side_effect = [
            _response(lines=[]),
            _response({'Id': 'sha256:' + '3' * 64}),
        ]
        client.pull_image('localhost:5000/app')

        pull_kwargs = client._session.request.call_args_list[0][1]
        assert pull_kwargs['params'] == {'fromImage': 'localhost:5000/app', 'tag': 'latest'}
        assert pull_kwargs['headers'] == {}

    def test_error_event_fails_the_pull(self, client):
        stream = _response(lines=[json.dumps({'error': 'manifest unknown'}).encode()])
        client._session.request.return_value = stream

        with pytest.raises(EngineError, match='manifest unknown'):
            client.pull_image('nginx:nope')
        stream.close.assert_called_once()
