"""Tests for own-container detection."""

import pytest

from isengard.self_id import (
    detect_self_id,
    id_from_cpuset,
    id_from_hostname,
    id_from_mountinfo,
    is_self,
)

FULL_ID = '4f66ad9a0b2e' + 'c' * 52


class TestHostname:

    def test_short_id_hostname(self):
        assert id_from_hostname('4f66ad9a0b2e') == '4f66ad9a0b2e'

    @pytest.mark.parametrize('hostname', [
        'my-server',
        'abc-def12345',
        '4F66AD9A0B2E',
        '4f66ad9a0b2',
        '4f66ad9a0b2e1',
        '4f66ad9a0b2e\n',
        '',
    ])
    def test_rejected(self, hostname):
        assert id_from_hostname(hostname) is None


class TestCpuset:

    def test_docker_cgroup(self, tmp_path):
        path = tmp_path / 'cpuset'
        path.write_text(f'/docker/{FULL_ID}\n')
        assert id_from_cpuset(str(path)) == FULL_ID

    def test_root_cgroup(self, tmp_path):
        path = tmp_path / 'cpuset'
        path.write_text('/\n')
        assert id_from_cpuset(str(path)) is None

    def test_missing_file(self, tmp_path):
        assert id_from_cpuset(str(tmp_path / 'missing')) is None


class TestMountinfo:

    def test_container_files_bind_mount(self, tmp_path):
        path = tmp_path / 'mountinfo'
        path.write_text(
            '600 500 0:50 / / rw,relatime - overlay overlay rw\n'
            f'612 600 259:1 /var/lib/docker/containers/{FULL_ID}/hostname /etc/hostname '
            'rw,relatime - ext4 /dev/root rw\n'
        )
        assert id_from_mountinfo(str(path)) == FULL_ID

    def test_no_container_lines(self, tmp_path):
        path = tmp_path / 'mountinfo'
        path.write_text('600 500 0:50 / / rw,relatime - overlay overlay rw\n')
        assert id_from_mountinfo(str(path)) is None

    def test_missing_file(self, tmp_path):
        assert id_from_mountinfo(str(tmp_path / 'missing')) is None


class TestDetectSelfId:

    def test_first_hit_wins(self):
        calls = []

        def first():
            calls.append('first')
            return None

        def second():
            calls.append('second')
            return 'aaaaaaaaaaaa'

        def third():
            calls.append('third')
            return 'b' * 64

        assert detect_self_id([first, second, third]) == 'aaaaaaaaaaaa'
        assert calls == ['first', 'second']

    def test_nothing_found(self):
        assert detect_self_id([lambda: None, lambda: '']) is None


class TestIsSelf:

    def test_exact_match(self):
        assert is_self(FULL_ID, FULL_ID)

    def test_short_id_prefix(self):
        assert is_self(FULL_ID, FULL_ID[:12])

    def test_other_container(self):
        assert not is_self('d' * 64, FULL_ID[:12])

    @pytest.mark.parametrize('self_id', [None, ''])
    def test_undetermined_matches_nothing(self, self_id):
        assert not is_self(FULL_ID, self_id)


def test_mountinfo_with_non_utf8_path(tmp_path):
    path = tmp_path / 'mountinfo'
    path.write_bytes(
        b'601 600 259:1 /caf\xe9 /data rw,relatime - ext4 /dev/root rw\n'
        b'612 600 259:1 /var/lib/docker/containers/' + FULL_ID.encode()
        + b'/hostname /etc/hostname rw,relatime - ext4 /dev/root rw\n'
    )
    assert id_from_mountinfo(str(path)) == FULL_ID


def test_mountinfo_non_utf8_without_container_line(tmp_path):
    path = tmp_path / 'mountinfo'
    path.write_bytes(b'601 600 259:1 /caf\xe9 /data rw,relatime - ext4 /dev/root rw\n')
    assert id_from_mountinfo(str(path)) is None


def test_cpuset_non_utf8(tmp_path):
    path = tmp_path / 'cpuset'
    path.write_bytes(b'/caf\xe9\n')
    assert id_from_cpuset(str(path)) is None
