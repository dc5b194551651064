import os
import sys
TEST_DIR = os.path.abspath(os.path.dirname(__file__))
PROJ_DIR = os.path.dirname(TEST_DIR)
sys.path.insert(0, os.path.join(PROJ_DIR, 'git-commit-mailer'))

import pytest

import git_commit_mailer
from git_commit_mailer import CommandError
from git_commit_mailer import Environment
from git_commit_mailer import Git
from git_commit_mailer import NoParentCommit


AUTHOR_NAME = 'Alice Author'
AUTHOR_EMAIL = 'alice@example.com'
AUTHOR_DATE = 1300000000


class FakeGit(Git):
    """A Git that answers from canned output instead of running git.

    outputs maps argument tuples to text (or to a function of the
    standard input returning text).  patches maps a revision to the
    bytes of its "git log -p" output.  Unknown commands fail the way
    git fails."""

    def __init__(self, outputs=None, patches=None):
        Git.__init__(self)
        self.outputs = dict(outputs or {})
        self.patches = dict(patches or {})
        self.commands = []

    def read_output(self, args, input=None, keepends=False):
        args = tuple(args)
        self.commands.append(args)
        try:
            output = self.outputs[args]
        except KeyError:
            raise CommandError(['git'] + list(args), 1)
        if callable(output):
            output = output(input)
        if not keepends:
            output = output.rstrip('\n\r')
        return output

    def stream_lines(self, args):
        args = tuple(args)
        self.commands.append(args)
        for line in self.patches.get(args[-1], b'').splitlines(True):
            yield line


class GraphGit(FakeGit):
    """A FakeGit that knows a small commit graph.

    commits maps a revision to (parents, subject); later entries are
    considered newer.  refs maps reference names to revisions."""

    def __init__(self, commits, refs=None, patches=None):
        FakeGit.__init__(self, patches=patches)
        self.commits = commits
        self.order = dict((revision, i) for (i, revision) in enumerate(commits))
        self.refs = dict(refs or {})

    def ancestors(self, revision):
        seen = set()
        todo = [revision]
        while todo:
            revision = todo.pop()
            if revision not in seen:
                seen.add(revision)
                todo.extend(self.commits[revision][0])
        return seen

    def parent_commit(self, revision):
        parents = self.commits[revision][0]
        if not parents:
            raise NoParentCommit(revision)
        return parents[0]

    def merge_base(self, revision1, revision2):
        common = self.ancestors(revision1) & self.ancestors(revision2)
        best = [
            c for c in common
            if not any(c != other and c in self.ancestors(other) for other in common)
            ]
        if not best:
            return None
        return max(best, key=self.order.get)

    def get_records(self, revision, formats):
        (parents, subject) = self.commits[revision]
        values = {
            '%an': AUTHOR_NAME,
            '%ae': AUTHOR_EMAIL,
            '%at': str(AUTHOR_DATE),
            '%s': subject,
            '%P': ' '.join(parents),
            }
        return [values[format] for format in formats]

    def rev_list_output(self, args, input):
        included = set()
        excluded = set()
        specs = list(args)
        if input:
            specs.extend(input.split())
        for spec in specs:
            if spec.startswith('-'):
                continue
            if '..' in spec:
                (old, new) = spec.split('..')
                excluded |= self.ancestors(old)
                included |= self.ancestors(new)
            elif spec.startswith('^'):
                excluded |= self.ancestors(spec[1:])
            else:
                included |= self.ancestors(spec)
        revisions = sorted(included - excluded, key=self.order.get, reverse=True)
        return ''.join('%s\n' % (revision,) for revision in revisions)

    def read_output(self, args, input=None, keepends=False):
        args = tuple(args)
        if args[0] == 'rev-list' and '--pretty=short' not in args:
            self.commands.append(args)
            output = self.rev_list_output(args[1:], input)
        elif args[:4] == ('log', '-n', '1', '--pretty=format:%s%n%n%b'):
            self.commands.append(args)
            output = self.commits[args[4]][1]
        elif args[:5] == ('log', '-n', '1', '--pretty=format:', '-C') \
                and args[5] == '--name-status':
            self.commands.append(args)
            output = ''
        elif args[:2] == ('cat-file', '-t') and args[2] in self.commits:
            self.commands.append(args)
            output = 'commit'
        elif args[:2] == ('for-each-ref', '--format=%(objectname) %(refname)'):
            self.commands.append(args)
            output = ''.join(
                '%s %s\n' % (revision, name) for (name, revision) in sorted(self.refs.items())
                )
        else:
            return FakeGit.read_output(self, args, input=input, keepends=keepends)
        if not keepends:
            output = output.rstrip('\n\r')
        return output


@pytest.fixture
def environment():
    environment = Environment(repository='/srv/git/project.git', fqdn='mail.example.com')
    environment.to = ['commits@example.com']
    environment.date = AUTHOR_DATE
    return environment


@pytest.fixture
def fake_git():
    return FakeGit()


@pytest.fixture(autouse=True)
def utc(monkeypatch):
    """Format all dates in UTC so that expected output does not depend on the host."""

    monkeypatch.setenv('TZ', 'UTC')
    if hasattr(git_commit_mailer.time, 'tzset'):
        git_commit_mailer.time.tzset()
    yield
    monkeypatch.undo()
    if hasattr(git_commit_mailer.time, 'tzset'):
        git_commit_mailer.time.tzset()


REVISION = '1' * 40
PARENT = '2' * 40
OTHER_PARENT = '3' * 40

PATCH = b"""\

diff --git a/README b/README
index 1111111..2222222 100644
--- a/README
+++ b/README
@@ -1,2 +1,2 @@
 Hello
-World
+There
diff --git a/src/main.c b/src/main.c
new file mode 100644
index 0000000..3333333
--- /dev/null
+++ b/src/main.c
@@ -0,0 +1,2 @@
+int main(void)
+{ return 0; }
"""

NAME_STATUS = """\
M\tREADME
A\tsrc/main.c
R090\told.txt\tdocs/new.txt
C075\ttemplate.txt\tdocs/copy.txt
D\tgone.txt
T\tlink
"""


def commit_git(
        parents=(PARENT,), name_status=NAME_STATUS, patch=PATCH,
        subject='Fix the greeting', body='The greeting was wrong.\n',
        ):
    """Return a FakeGit that knows everything about the commit REVISION."""

    outputs = {
        ('log', '-n', '1', '--pretty=format:%an%n%ae%n%at%n%s%n%P%n', REVISION):
            '%s\n%s\n%d\n%s\n%s\n' % (
                AUTHOR_NAME, AUTHOR_EMAIL, AUTHOR_DATE, subject, ' '.join(parents),
                ),
        ('log', '-n', '1', '--pretty=format:%s%n%n%b', REVISION):
            '%s\n\n%s' % (subject, body),
        ('log', '-n', '1', '--pretty=format:', '-C', '--name-status', REVISION):
            name_status,
        ('log', '-n', '1', '--pretty=format:%at%n', PARENT): '%d\n' % (AUTHOR_DATE - 60,),
        }
    return FakeGit(outputs, patches={REVISION: patch})
