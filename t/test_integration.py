import io
import os
import shutil
import subprocess
import sys

import pytest

from git_commit_mailer import ZEROS
from git_commit_mailer import main


pytestmark = pytest.mark.skipif(shutil.which('git') is None, reason='git is not installed')


@pytest.fixture
def repository(tmp_path, monkeypatch):
    for (name, value) in [
            ('GIT_AUTHOR_NAME', 'Alice Author'),
            ('GIT_AUTHOR_EMAIL', 'alice@example.com'),
            ('GIT_COMMITTER_NAME', 'Alice Author'),
            ('GIT_COMMITTER_EMAIL', 'alice@example.com'),
            ('GIT_CONFIG_NOSYSTEM', '1'),
            ('HOME', str(tmp_path)),
            ]:
        monkeypatch.setenv(name, value)
    path = tmp_path / 'project'
    path.mkdir()
    git(path, 'init', '-q')
    git(path, 'checkout', '-q', '-b', 'main')
    git(path, 'config', 'commitmailer.to', 'commits@example.com')
    git(path, 'config', 'commitmailer.fqdn', 'mail.example.com')
    git(path, 'config', 'commitmailer.name', 'project')
    return path


def git(path, *args):
    return subprocess.check_output(('git',) + args, cwd=str(path)).decode('utf-8').strip()


def commit(path, name, content, message):
    with open(os.path.join(str(path), name), 'w') as f:
        f.write(content)
    git(path, 'add', name)
    git(path, 'commit', '-q', '-m', message)
    return git(path, 'rev-parse', 'HEAD')


def run_main(path, args, capsys):
    main(['--repository', str(path / '.git'), '--stdout'] + args)
    return capsys.readouterr().out


def test_update_hook_mode(repository, capsys):
    revision = commit(repository, 'hello.txt', 'Hello\n', 'Add greeting')
    out = run_main(repository, ['refs/heads/main', ZEROS, revision], capsys)
    assert out.count('=' * 75 + '\n') == 2
    assert 'Subject: project@%s [main] Add greeting\n' % (revision[:7],) in out
    assert 'X-Git-Revision: %s\n' % (revision,) in out
    assert '  Added files:\n    hello.txt\n' in out
    assert '+Hello\n' in out


def test_post_receive_mode(repository, capsys, monkeypatch):
    first = commit(repository, 'hello.txt', 'Hello\n', 'Add greeting')
    second = commit(repository, 'hello.txt', 'Hello there\n', 'Extend greeting')
    monkeypatch.setattr(sys, 'stdin', io.StringIO('%s %s refs/heads/main\n' % (first, second)))
    out = run_main(repository, ['--send-push-mail'], capsys)
    assert out.count('=' * 75 + '\n') == 4
    assert 'Subject: project@%s (push) branch (main) is updated.\n' % (second[:7],) in out
    assert '    from  %s Add greeting\n' % (first[:7],) in out
    assert '  Modified: hello.txt (+1 -1)\n' in out
    assert '-Hello\n+Hello there\n' in out


def test_merged_branch(repository, capsys, monkeypatch):
    base = commit(repository, 'a.txt', 'a\n', 'Base')
    git(repository, 'checkout', '-q', '-b', 'topic')
    commit(repository, 'b.txt', 'b\n', 'Topic work')
    git(repository, 'checkout', '-q', 'main')
    commit(repository, 'c.txt', 'c\n', 'Main work')
    git(repository, 'merge', '-q', '--no-edit', 'topic')
    git(repository, 'branch', '-q', '-D', 'topic')
    merge = git(repository, 'rev-parse', 'HEAD')
    monkeypatch.setattr(sys, 'stdin', io.StringIO('%s %s refs/heads/main\n' % (base, merge)))
    out = run_main(repository, [], capsys)
    assert out.count('=' * 75 + '\n') == 6
    assert '  Merged %s: Merge branch \'topic\'' % (merge[:7],) in out
    assert 'In-Reply-To: <merge.' in out


def test_missing_recipients(repository, capsys):
    git(repository, 'config', '--unset', 'commitmailer.to')
    with pytest.raises(SystemExit) as excinfo:
        run_main(repository, [], capsys)
    assert 'commitmailer.to' in str(excinfo.value.code)
