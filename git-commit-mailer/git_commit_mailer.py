#! /usr/bin/env python3

# Copyright (c) 2012,2013 Michael Haggerty
# Derived from contrib/hooks/post-receive-email, which is
# Copyright (c) 2007 Andy Parkins
# and also includes contributions by other authors.
#
# This file is part of git-commit-mailer.
#
# git-commit-mailer is free software: you can redistribute it and/or
# modify it under the terms of the GNU General Public License version
# 2 as published by the Free Software Foundation.
#
# This program is distributed in the hope that it will be useful, but
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see
# <http://www.gnu.org/licenses/>.

"""Generate commit notification emails for pushes to a git repository.

For each reference that was changed by a push, this hook builds one
push summary describing how the reference was changed (created,
updated or deleted; branch, annotated tag or unannotated tag) and one
commit email for every new commit that the change introduced.  Commit
emails contain the commit message, the list of touched files and the
full diff of the commit, as plain text and optionally as an HTML
alternative with line numbers and word-level highlighting.

Commits that were brought in by a merge are reported too, in their
original order, and are marked with the merge commit(s) that pulled
them in.

This script is designed to be used as a "post-receive" hook in a git
repository (see githooks(5)): it reads "OLDREV NEWREV REFNAME" lines
on standard input.  It can also be given the three values as
arguments ("update" hook style), or be told to fetch from origin and
report whatever changed there (--track-remote).

To help with debugging, this script accepts a --stdout option, which
causes the emails to be written to standard output rather than sent
over SMTP.

See the accompanying README file for the complete documentation.

"""

import sys
import os
import re
import time
import base64
import random
import socket
import hashlib
import difflib
import smtplib
import traceback
import subprocess
import optparse
from email.header import Header
from email.utils import formataddr
from email.utils import formatdate
from email.utils import getaddresses
from email.utils import parseaddr
from email.utils import parsedate_tz
from email.utils import mktime_tz
from html import escape
from urllib.parse import quote


__version__ = '1.0.0'

DEBUG = False

URL = 'https://github.com/git-commit-mailer/git-commit-mailer'

ZEROS = '0' * 40
SHORT_REVISION_LENGTH = 7

KILO_SIZE = 1000
DEFAULT_MAX_SIZE = '100M'

# Lines of this length or more cannot be sent with 8bit transfer
# encoding (RFC 5322 section 2.1.1).
MAX_LINE_BYTES = 998

BINARY_LINE = '(binary line)'

CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'

BRANCH = 'branch'
ANNOTATED_TAG = 'annotated tag'
UNANNOTATED_TAG = 'unannotated tag'

CHANGE_TYPE_LABELS = {
    CREATE: 'created',
    UPDATE: 'updated',
    DELETE: 'deleted',
    }

REPOSITORY_BROWSERS = ['github', 'github-wiki', 'gitlab']


REWIND_ONLY_TEMPLATE = """\
This update discarded existing revisions and left the branch pointing at
a previous point in the repository history.

 * -- * -- N (%(newrev_short)s)
            \\
             O <- O <- O (%(oldrev_short)s)

The removed revisions are not necessarilly gone - if another reference
still refers to them they will stay in the repository.
"""


NON_FF_TEMPLATE = """\
This update added new revisions after undoing existing revisions.  That is
to say, the old revision is not a strict subset of the new revision.  This
situation occurs when you --force push a change and generate a repository
containing something like this:

 * -- * -- B <- O <- O <- O (%(oldrev_short)s)
            \\
             N -> N -> N (%(newrev_short)s)

When this happens we assume that you've already had alert emails for all
of the O revisions, and so we here report only the revisions in the N
branch from the common base, B.
"""


NO_NEW_REVISIONS_TEMPLATE = """\
No new revisions were added by this update.
"""


PUSH_BODY_TEMPLATE = """\
%(author_name)s\t%(date)s

New Push:

  Message:
%(log)s

"""


ERROR_TEMPLATE = """\
git-commit-mailer failed while processing

  %(oldrev)s %(newrev)s %(refname)s

in repository %(name)s:

%(traceback)s"""


class CommandError(Exception):
    def __init__(self, cmd, retcode, stderr=''):
        self.cmd = cmd
        self.retcode = retcode
        self.stderr = stderr
        message = 'Command "%s" failed with retcode %s' % (' '.join(cmd), retcode,)
        if stderr:
            message += '\n' + stderr.rstrip('\n')
        Exception.__init__(self, message)


class ConfigurationException(Exception):
    pass


class MalformedInputError(Exception):
    """Git produced output that this script does not know how to read.

    Raising one of these aborts processing of the push: the input is
    either damaged or comes from a git version that speaks a diff
    dialect we do not understand."""

    def __init__(self, message, line):
        self.line = line
        Exception.__init__(self, '%s: %r' % (message, line,))


class MalformedDiffHeader(MalformedInputError):
    def __init__(self, line):
        MalformedInputError.__init__(self, 'unexpected diff header format', line)


class UnsupportedDiffLine(MalformedInputError):
    def __init__(self, line):
        MalformedInputError.__init__(self, 'unexpected extended header line', line)


class UnsupportedStatusLine(MalformedInputError):
    def __init__(self, line):
        MalformedInputError.__init__(self, 'unsupported status type', line)


class InvalidRevisionRange(Exception):
    def __init__(self, old_revision, new_revision):
        self.old_revision = old_revision
        self.new_revision = new_revision
        Exception.__init__(
            self,
            'Invalid revision range %s..%s: both revisions are null'
            % (old_revision, new_revision,)
            )


class UnknownReferenceUpdate(Exception):
    def __init__(self, reference, object_type):
        self.reference = reference
        self.object_type = object_type
        Exception.__init__(
            self,
            'Unknown type of update to %s (%s)' % (reference, object_type,)
            )


class SuppressedUpdate(Exception):
    """The reference change should not produce any email.

    This is not an error; it is raised to short-circuit processing of
    a push to a tracking branch."""

    def __init__(self, reference):
        self.reference = reference
        Exception.__init__(self, 'Push-update of tracking branch %r' % (reference,))


class NoParentCommit(Exception):
    def __init__(self, revision):
        self.revision = revision
        Exception.__init__(self, 'Revision %s has no parent' % (revision,))


def read_output(cmd, input=None, keepends=False, **kw):
    if input is not None:
        stdin = subprocess.PIPE
        input = input.encode('utf-8')
    else:
        stdin = None
    if DEBUG:
        sys.stderr.write('+ %s\n' % (' '.join(cmd),))
    p = subprocess.Popen(
        cmd, stdin=stdin, stdout=subprocess.PIPE, stderr=subprocess.PIPE, **kw
        )
    (out, err) = p.communicate(input)
    retcode = p.wait()
    if retcode:
        raise CommandError(cmd, retcode, err.decode('utf-8', 'replace'))
    out = out.decode('utf-8', 'replace')
    if not keepends:
        out = out.rstrip('\n\r')
    return out


def read_lines(cmd, keepends=False, **kw):
    """Return the lines output by command.

    Return as single lines, with newlines stripped off."""

    return read_output(cmd, keepends=True, **kw).splitlines(keepends)


def short_revision(revision):
    return revision[:SHORT_REVISION_LENGTH]


def is_null_revision(revision):
    return revision is None or revision == ZEROS


def format_time(timestamp):
    """Format an epoch timestamp in local time, the way commit emails show dates."""

    return time.strftime('%Y-%m-%d %H:%M:%S %z (%a, %d %b %Y)', time.localtime(timestamp))


def format_diff_time(timestamp):
    return time.strftime('%Y-%m-%d %H:%M:%S %z', time.localtime(timestamp))


def parse_size(size):
    """Parse a size like '100M', '2.5KB' or '300' into a number of bytes."""

    m = re.match(r'^\s*(?P<number>[0-9]+(?:\.[0-9]*)?)\s*(?P<unit>[GMK]?)B?\s*$', str(size), re.I)
    if not m:
        raise ValueError('invalid size: %r' % (size,))
    number = float(m.group('number'))
    exponent = {'': 0, 'K': 1, 'M': 2, 'G': 3}[m.group('unit').upper()]
    return int(number * KILO_SIZE ** exponent)


def format_size(size):
    if size is None:
        return 'no limit'
    if size < KILO_SIZE:
        return '%dB' % (size,)
    for unit in ['KB', 'MB']:
        size /= float(KILO_SIZE)
        if size < KILO_SIZE:
            return '%g%s' % (size, unit)
    return '%g%s' % (size / float(KILO_SIZE), 'GB')


class Git(object):
    """Run git subcommands against one repository.

    This is the only place where git processes are started; everything
    else asks a Git instance for the output of a command, so that a
    stand-in can be used when no repository is available."""

    def __init__(self, git_dir=None, executable='git'):
        self.git_dir = git_dir
        self.executable = executable

    def command(self, args):
        cmd = [self.executable]
        if self.git_dir:
            cmd.append('--git-dir=%s' % (self.git_dir,))
        return cmd + list(args)

    def read_output(self, args, input=None, keepends=False):
        return read_output(self.command(args), input=input, keepends=keepends)

    def read_lines(self, args, input=None, keepends=False):
        return self.read_output(args, input=input, keepends=True).splitlines(keepends)

    def stream_lines(self, args):
        """Iterate over the raw (bytes) output lines of a git command.

        The process is terminated if the caller stops iterating before
        the output is exhausted, so huge outputs never have to be read
        completely."""

        cmd = self.command(args)
        if DEBUG:
            sys.stderr.write('+ %s\n' % (' '.join(cmd),))
        p = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL)
        finished = False
        try:
            for line in p.stdout:
                yield line
            finished = True
        finally:
            if not finished:
                p.kill()
            p.stdout.close()
            retcode = p.wait()
        if retcode:
            raise CommandError(cmd, retcode)

    def get_records(self, revision, formats):
        """Return the values of several --pretty=format placeholders for revision."""

        output = self.read_output(
            ['log', '-n', '1', '--pretty=format:%s%%n' % ('%n'.join(formats),), revision],
            keepends=True,
            )
        return [line.strip() for line in output.splitlines()]

    def get_record(self, revision, format):
        return self.get_records(revision, [format])[0]

    def parent_commit(self, revision):
        try:
            return self.read_output(['rev-parse', '--verify', '--quiet', '%s^' % (revision,)])
        except CommandError:
            raise NoParentCommit(revision)

    def merge_base(self, revision1, revision2):
        try:
            return self.read_output(['merge-base', revision1, revision2])
        except CommandError as e:
            if e.retcode == 1:
                # The revisions have no common ancestor.
                return None
            raise

    def object_type(self, object_name):
        return self.read_output(['cat-file', '-t', object_name])

    def rev_list(self, args, input=None):
        if input is not None:
            args = ['--stdin'] + list(args)
        return self.read_lines(['rev-list'] + list(args), input=input)

    def rev_parse(self, name):
        return self.read_output(['rev-parse', name])


class Config(object):
    def __init__(self, section, git):
        self.section = section
        self.git = git

    @staticmethod
    def _split(s):
        """Split NUL-terminated values."""

        words = s.split('\0')
        assert words[-1] == ''
        return words[:-1]

    def get(self, name, default=None):
        try:
            values = self._split(self.git.read_output(
                ['config', '--get', '--null', '%s.%s' % (self.section, name)],
                keepends=True,
                ))
            assert len(values) == 1
            return values[0]
        except CommandError:
            return default

    def get_bool(self, name, default=None):
        try:
            value = self.git.read_output(
                ['config', '--get', '--bool', '%s.%s' % (self.section, name)]
                )
        except CommandError:
            return default
        return value == 'true'

    def get_all(self, name, default=None):
        """Read a (possibly multivalued) setting from the configuration.

        Return the result as a list of values, or default if the name
        is unset."""

        try:
            return self._split(self.git.read_output(
                ['config', '--get-all', '--null', '%s.%s' % (self.section, name)],
                keepends=True,
                ))
        except CommandError as e:
            if e.retcode == 1:
                # "the section or key is invalid"; i.e., there is no
                # value for the specified key.
                return default
            else:
                raise

    def get_recipients(self, name, default=None):
        """Read a recipients list from the configuration.

        Return the result as a list of email addresses, or default if
        the option is unset.  A setting may have several values, each
        of which may hold a comma-separated list."""

        lines = self.get_all(name, default=None)
        if lines is None:
            return default
        return [formataddr(pair) for pair in getaddresses(lines) if pair[1]]

    def __contains__(self, name):
        return self.get_all(name, default=None) is not None


QUOTED_PATH_RE = re.compile(r'^"(?P<path>.*)"$', re.S)
PATH_ESCAPE_RE = re.compile(r'\\([0-7]{1,3}|.)', re.S)
PATH_ESCAPES = {
    'a': '\a', 'b': '\b', 't': '\t', 'n': '\n',
    'v': '\v', 'f': '\f', 'r': '\r', '"': '"', '\\': '\\',
    }


def unescape_file_path(file_path):
    """Undo the quoting git applies to unusual path names.

    git surrounds such paths with double quotes and uses C-style
    backslash escapes, writing bytes outside of printable ASCII as
    three-digit octal escapes.  The escaped bytes are decoded as UTF-8.
    Paths that are not quoted are returned unchanged."""

    m = QUOTED_PATH_RE.match(file_path)
    if not m:
        return file_path

    escaped = m.group('path')
    data = bytearray()
    position = 0
    for m in PATH_ESCAPE_RE.finditer(escaped):
        data.extend(escaped[position:m.start()].encode('utf-8'))
        code = m.group(1)
        if code[0] in '01234567':
            data.append(int(code, 8) & 0xff)
        else:
            data.extend(PATH_ESCAPES.get(code, code).encode('utf-8'))
        position = m.end()
    data.extend(escaped[position:].encode('utf-8'))
    return data.decode('utf-8', 'replace')


class DiffLine(object):
    """One line of a file diff.

    type is one of HUNK_HEADER, ADDED, DELETED or NOT_CHANGED.  A hunk
    header carries the starting line numbers of both sides; an added
    line only has a to_line_number and a deleted line only a
    from_line_number.  text is the raw line, including its +/-
    marker."""

    HUNK_HEADER = 'hunk_header'
    ADDED = 'added'
    DELETED = 'deleted'
    NOT_CHANGED = 'not_changed'

    def __init__(self, type, from_line_number, to_line_number, text):
        self.type = type
        self.from_line_number = from_line_number
        self.to_line_number = to_line_number
        self.text = text

    def __eq__(self, other):
        return (
            isinstance(other, DiffLine)
            and (self.type, self.from_line_number, self.to_line_number, self.text)
            == (other.type, other.from_line_number, other.to_line_number, other.text)
            )

    def __ne__(self, other):
        return not self == other

    def __repr__(self):
        return 'DiffLine(%r, %r, %r, %r)' % (
            self.type, self.from_line_number, self.to_line_number, self.text,
            )


class FileDiff(object):
    """The part of a commit's patch that concerns a single file.

    FileDiff objects are usually created by FileDiff.parse(), from the
    lines of one "diff --git" section of the output of "git log -p
    -C".  Besides the parsed lines, a FileDiff records what happened
    to the file (added, modified, deleted, renamed or copied), mode
    changes, the similarity of a rename or copy and whether the file
    is binary."""

    CHANGE_TYPE_LABELS = {
        'added': 'Added',
        'modified': 'Modified',
        'deleted': 'Deleted',
        'copied': 'Copied',
        'renamed': 'Renamed',
        }

    SEPARATOR = '=' * 67 + '\n'

    HEADER_PREFIX = 'diff --git '
    HEADER_RE = re.compile(r'^diff --git (?P<from>"?a/.*) (?P<to>"?b/.*)$')
    PATH_PREFIX_RE = re.compile(r'^[ab]/(?P<path>.*)$', re.S)
    HUNK_HEADER_RE = re.compile(r'^@@ -(?P<from>\d+)(?:,\d+)? \+(?P<to>\d+)(?:,\d+)? @@')

    MINUS_FILE_RE = re.compile(r'^--- (?P<path>a/.*|"a/.*"|/dev/null)$')
    PLUS_FILE_RE = re.compile(r'^\+\+\+ (?P<path>b/.*|"b/.*"|/dev/null)$')
    INDEX_RE = re.compile(r'^index (?P<old>[0-9a-f,]{7,})\.\.(?P<new>[0-9a-f]{7,})(?: [0-7]+)?$')
    NEW_FILE_MODE_RE = re.compile(r'^new file mode (?P<mode>.*)$')
    DELETED_FILE_MODE_RE = re.compile(r'^deleted file mode (?P<mode>.*)$')
    RENAME_RE = re.compile(r'^rename (?P<direction>from|to) (?P<path>.*)$')
    COPY_RE = re.compile(r'^copy (?P<direction>from|to) (?P<path>.*)$')
    SIMILARITY_RE = re.compile(r'^similarity index (?P<index>\d+)%$')
    DISSIMILARITY_RE = re.compile(r'^dissimilarity index (?P<index>\d+)%$')
    BINARY_RE = re.compile(r'^Binary files (?P<from>.*) and (?P<to>.*) differ$')
    OLD_MODE_RE = re.compile(r'^old mode (?P<mode>.*)$')
    NEW_MODE_RE = re.compile(r'^new mode (?P<mode>.*)$')
    COMBINED_MODE_RE = re.compile(r'^mode [^,]+,(?P<old>.*)\.\.(?P<new>.*)$')

    def __init__(self, from_file=None, to_file=None):
        self.index = None
        self.change_type = 'modified'
        self.from_file = from_file
        self.to_file = to_file

        self.is_binary = False
        self.is_mode_changed = False
        self.old_mode = self.new_mode = None
        self.new_file_mode = self.deleted_file_mode = None
        self.similarity_index = None
        self.dissimilarity_index = None
        self.old_blob = self.new_blob = None
        self.minus_file = self.plus_file = None
        self.copy_or_rename_from = self.copy_or_rename_to = None

        self.lines = []
        self.added_line_count = 0
        self.deleted_line_count = 0

        self.old_revision = ZEROS
        self.new_revision = ZEROS
        self.old_date = None
        self.new_date = None

    @classmethod
    def parse(klass, lines):
        """Parse the lines of one "diff --git" section into a FileDiff.

        lines must start with the "diff --git" header line and must not
        contain line terminators."""

        lines = list(lines)
        if not lines:
            raise MalformedDiffHeader('')

        diff = klass()
        diff.parse_header(lines[0])
        position = diff.parse_extended_headers(lines, 1)
        diff.parse_body(lines[position:])
        return diff

    @property
    def file_path(self):
        return self.to_file

    def set_revisions(self, old_revision, old_date, new_revision, new_date):
        """Tell the diff which commits (and their dates) it lies between."""

        self.old_revision = old_revision
        self.old_date = old_date
        self.new_revision = new_revision
        self.new_date = new_date

    def _extract_file_path(self, file_path, line):
        m = self.PATH_PREFIX_RE.match(unescape_file_path(file_path))
        if not m:
            raise MalformedDiffHeader(line)
        return m.group('path')

    def parse_header(self, line):
        rest = line[len(self.HEADER_PREFIX):]
        if not line.startswith(self.HEADER_PREFIX):
            raise MalformedDiffHeader(line)

        # When neither path is quoted and both name the same file, the
        # header can be split in the middle even if the path contains
        # spaces (or even " b/").
        half = (len(rest) - 1) // 2
        if (
                len(rest) % 2 == 1
                and rest.startswith('a/')
                and rest[half:half + 3] == ' b/'
                and rest[2:half] == rest[half + 3:]
                ):
            self.from_file = self.to_file = rest[2:half]
            return

        m = self.HEADER_RE.match(line)
        if not m:
            raise MalformedDiffHeader(line)
        self.from_file = self._extract_file_path(m.group('from'), line)
        self.to_file = self._extract_file_path(m.group('to'), line)

    def parse_ordinary_change(self, line):
        m = self.MINUS_FILE_RE.match(line)
        if m:
            path = m.group('path').rstrip('\t')
            self.minus_file = unescape_file_path(path)
            if path == '/dev/null':
                self.change_type = 'added'
            return True
        m = self.PLUS_FILE_RE.match(line)
        if m:
            path = m.group('path').rstrip('\t')
            self.plus_file = unescape_file_path(path)
            if path == '/dev/null':
                self.change_type = 'deleted'
            return True
        m = self.INDEX_RE.match(line)
        if m:
            self.old_blob = m.group('old')
            self.new_blob = m.group('new')
            return True
        return False

    def parse_add_and_remove(self, line):
        m = self.NEW_FILE_MODE_RE.match(line)
        if m:
            self.change_type = 'added'
            self.new_file_mode = m.group('mode')
            return True
        m = self.DELETED_FILE_MODE_RE.match(line)
        if m:
            self.change_type = 'deleted'
            self.deleted_file_mode = m.group('mode')
            return True
        return False

    def _record_copy_or_rename(self, m):
        path = unescape_file_path(m.group('path'))
        if m.group('direction') == 'from':
            self.copy_or_rename_from = path
        else:
            self.copy_or_rename_to = path

    def parse_copy_and_rename(self, line):
        m = self.RENAME_RE.match(line)
        if m:
            self.change_type = 'renamed'
            self._record_copy_or_rename(m)
            return True
        m = self.COPY_RE.match(line)
        if m:
            self.change_type = 'copied'
            self._record_copy_or_rename(m)
            return True
        m = self.SIMILARITY_RE.match(line)
        if m:
            self.similarity_index = int(m.group('index'))
            return True
        m = self.DISSIMILARITY_RE.match(line)
        if m:
            self.dissimilarity_index = int(m.group('index'))
            return True
        return False

    def parse_binary_file_change(self, line):
        m = self.BINARY_RE.match(line)
        if not m:
            return False
        self.is_binary = True
        if m.group('from') == '/dev/null':
            self.change_type = 'added'
        elif m.group('to') == '/dev/null':
            self.change_type = 'deleted'
        return True

    def parse_mode_change(self, line):
        m = self.OLD_MODE_RE.match(line)
        if m:
            self.old_mode = m.group('mode')
            self.is_mode_changed = True
            return True
        m = self.NEW_MODE_RE.match(line)
        if m:
            self.new_mode = m.group('mode')
            self.is_mode_changed = True
            return True
        m = self.COMBINED_MODE_RE.match(line)
        if m:
            self.old_mode = m.group('old')
            self.new_mode = m.group('new')
            self.is_mode_changed = True
            return True
        return False

    def parse_extended_headers(self, lines, position):
        """Consume extended header lines starting at lines[position].

        Return the position of the first hunk header (or len(lines))."""

        parsers = [
            self.parse_ordinary_change,
            self.parse_add_and_remove,
            self.parse_copy_and_rename,
            self.parse_binary_file_change,
            self.parse_mode_change,
            ]
        while position < len(lines) and not lines[position].startswith('@@'):
            line = lines[position]
            for parser in parsers:
                if parser(line):
                    break
            else:
                raise UnsupportedDiffLine(line)
            position += 1
        return position

    def parse_body(self, lines):
        from_offset = 0
        to_offset = 0
        for line in lines:
            m = self.HUNK_HEADER_RE.match(line)
            if m:
                from_offset = int(m.group('from'))
                to_offset = int(m.group('to'))
                self.lines.append(DiffLine(DiffLine.HUNK_HEADER, from_offset, to_offset, line))
            elif line.startswith('+'):
                self.added_line_count += 1
                self.lines.append(DiffLine(DiffLine.ADDED, None, to_offset, line))
                to_offset += 1
            elif line.startswith('-'):
                self.deleted_line_count += 1
                self.lines.append(DiffLine(DiffLine.DELETED, from_offset, None, line))
                from_offset += 1
            else:
                self.lines.append(DiffLine(DiffLine.NOT_CHANGED, from_offset, to_offset, line))
                from_offset += 1
                to_offset += 1

    def is_content_identical(self):
        return (
            self.change_type in ('renamed', 'copied')
            and self.similarity_index == 100
            )

    def format_file_mode(self):
        if self.change_type == 'added' and self.new_file_mode:
            return ' %s' % (self.new_file_mode,)
        elif self.change_type == 'deleted' and self.deleted_file_mode:
            return ' %s' % (self.deleted_file_mode,)
        else:
            return ''

    def format_similarity_index(self):
        if self.change_type in ('renamed', 'copied') and self.similarity_index is not None:
            return ' %s%%' % (self.similarity_index,)
        else:
            return ''

    def format_header(self):
        header = '  %s: %s (+%d -%d)%s%s\n' % (
            self.CHANGE_TYPE_LABELS[self.change_type], self.to_file,
            self.added_line_count, self.deleted_line_count,
            self.format_file_mode(), self.format_similarity_index(),
            )
        if self.is_mode_changed:
            header += '  Mode: %s -> %s\n' % (self.old_mode, self.new_mode)
        header += self.SEPARATOR
        return header

    def _format_date_and_blob(self, date, blob):
        formatted = ''
        if date is not None:
            formatted = format_diff_time(date)
        if blob:
            formatted += ' (%s)' % (blob,)
        return formatted

    def from_header(self):
        return '--- %s    %s\n' % (
            self.from_file, self._format_date_and_blob(self.old_date, self.old_blob),
            )

    def to_header(self):
        return '+++ %s    %s\n' % (
            self.to_file, self._format_date_and_blob(self.new_date, self.new_blob),
            )

    def headers(self):
        """Return the ---/+++ lines shown above the diff body."""

        if self.is_binary:
            return '(Binary files differ)\n'
        if self.is_content_identical():
            return ''
        if self.change_type == 'added':
            return '--- /dev/null\n' + self.to_header()
        elif self.change_type == 'deleted':
            return self.from_header() + '+++ /dev/null\n'
        else:
            return self.from_header() + self.to_header()

    def body(self):
        return ''.join(line.text + '\n' for line in self.lines)

    def git_command(self):
        """Return a shell line showing how to view this change with git."""

        old = short_revision(self.old_revision)
        new = short_revision(self.new_revision)
        if self.change_type == 'added':
            args = ['show', '%s:%s' % (new, self.to_file)]
        elif self.change_type == 'deleted':
            args = ['show', '%s:%s' % (old, self.to_file)]
        elif self.change_type == 'modified':
            args = ['diff', old, new, '--', self.to_file]
        elif self.change_type == 'renamed':
            args = [
                'diff', '-C', '--diff-filter=R',
                old, new, '--', self.from_file, self.to_file,
                ]
        elif self.change_type == 'copied':
            args = [
                'diff', '-C', '--diff-filter=C',
                old, new, '--', self.from_file, self.to_file,
                ]
        else:
            raise ValueError('unknown diff type: %s' % (self.change_type,))
        return '    %% git %s\n' % (' '.join(args),)

    def format(self, add_diff=True):
        formatted = self.format_header()
        if add_diff:
            formatted += self.headers() + self.body()
        else:
            formatted += self.git_command()
        return formatted


def header_encode(text, header_name=None):
    """Encode and line-wrap the value of an email header field."""

    try:
        text.encode('ascii')
    except UnicodeEncodeError:
        return Header(text, 'utf-8', header_name=header_name).encode()
    return Header(text, header_name=header_name).encode()


def decode_diff_line(line):
    """Turn one raw line of "git log -p" output into text.

    The line terminator is removed.  Lines that are not valid UTF-8
    (binary data, legacy encodings) are replaced by a placeholder so
    that the rest of the diff can still be shown."""

    if line.endswith(b'\n'):
        line = line[:-1]
        if line.endswith(b'\r'):
            line = line[:-1]
    try:
        return line.decode('utf-8')
    except UnicodeDecodeError:
        if line[:1] in (b'+', b'-', b' '):
            return line[:1].decode('ascii') + BINARY_LINE
        return BINARY_LINE


class Info(object):
    """Information about something that is announced by email.

    Abstract base class of PushInfo and CommitInfo.  An Info knows its
    Message-ID, its extra headers, its subject and how to format its
    body as text and HTML."""

    REF_RE = re.compile(r'^refs/(?P<area>[^/]+)/(?P<shortname>.*)$')

    def __init__(self, environment, git, reference, revision):
        self.environment = environment
        self.git = git
        self.reference = reference
        self.revision = revision

    @property
    def short_reference(self):
        m = self.REF_RE.match(self.reference)
        if m:
            return m.group('shortname')
        return self.reference

    @property
    def short_revision(self):
        return short_revision(self.revision)

    def get_records(self, formats):
        return self.git.get_records(self.revision, formats)

    def format_mail_body_html(self):
        return '<pre>%s</pre>' % (escape(self.format_mail_body_text()),)


class PushInfo(Info):
    """The summary of one reference change."""

    def __init__(
            self, environment, git, old_revision, new_revision, reference,
            reference_type, change_type, log, commits=None,
            fast_forward=False, explanation=None,
            ):
        # XXX the revision used for looking up the author is the old
        # one when the reference was deleted; revision (and therefore
        # the link in the email and the short revision in the subject)
        # stays the null new revision.
        if is_null_revision(new_revision):
            lookup_revision = old_revision
        else:
            lookup_revision = new_revision
        Info.__init__(self, environment, git, reference, lookup_revision)
        self.old_revision = old_revision
        self.new_revision = new_revision
        self.reference_type = reference_type
        self.change_type = change_type
        self.log = log
        self.commits = commits or []
        self.fast_forward = fast_forward
        self.explanation = explanation

        (self.author_name, self.author_email) = self.get_records(['%an', '%ae'])
        self.revision = new_revision
        if environment.date is not None:
            self.date = environment.date
        else:
            self.date = time.time()

    def branch_changed(self):
        return bool(self.commits)

    @property
    def message_id(self):
        return '<push.%s.%s@%s>' % (
            self.old_revision, self.new_revision, self.environment.fqdn,
            )

    def headers(self):
        return [
            'X-Git-OldRev: %s' % (self.old_revision,),
            'X-Git-NewRev: %s' % (self.new_revision,),
            'X-Git-Refname: %s' % (self.reference,),
            'X-Git-Reftype: %s' % (self.reference_type,),
            'Message-ID: %s' % (self.message_id,),
            ]

    def format_mail_subject(self):
        return '(push) %s (%s) is %s.' % (
            self.reference_type, self.short_reference,
            CHANGE_TYPE_LABELS[self.change_type],
            )

    def format_mail_body_text(self):
        log = '\n'.join('    %s' % (line,) for line in self.log.rstrip().split('\n'))
        return PUSH_BODY_TEMPLATE % dict(
            author_name=self.author_name,
            date=format_time(self.date),
            log=log,
            )


class CommitInfo(Info):
    """Everything a commit email says about one commit.

    Constructing a CommitInfo asks git for the commit's metadata, its
    message, the list of files it touched and its patch.  Afterwards
    the only change made to a CommitInfo is the addition of merge
    annotations by MergeWalker."""

    def __init__(self, environment, git, reference, revision):
        Info.__init__(self, environment, git, reference, revision)

        self.files = []
        self.added_files = []
        self.copied_files = []
        self.deleted_files = []
        self.updated_files = []
        self.renamed_files = []
        self.type_changed_files = []
        self.diffs = []
        self.diff_truncated = False

        self.merge_messages = []
        self.merge_commits = []

        self.set_records()
        self.parse_file_status()
        self.parse_diff()

    def set_records(self):
        (
            self.author_name, self.author_email, date,
            self.subject, parent_revisions,
            ) = self.get_records(['%an', '%ae', '%at', '%s', '%P'])
        self.date = int(date)
        self.parent_revisions = parent_revisions.split()
        self.summary = self.git.read_output(
            ['log', '-n', '1', '--pretty=format:%s%n%n%b', self.revision]
            )

    @property
    def first_parent(self):
        if not self.parent_revisions:
            return None
        return self.parent_revisions[0]

    @property
    def other_parents(self):
        return self.parent_revisions[1:]

    def is_merge(self):
        return len(self.parent_revisions) >= 2

    def add_merge(self, merge_info):
        """Record that this commit was brought in by merge_info.

        Return True if the annotation is new."""

        merge_message = 'Merged %s: %s' % (merge_info.short_revision, merge_info.subject)
        if merge_message in self.merge_messages:
            return False
        self.merge_messages.append(merge_message)
        self.merge_commits.append(merge_info)
        return True

    @property
    def message_id(self):
        if self.is_merge():
            return '<merge.%s.%s@%s>' % (
                self.first_parent, self.revision, self.environment.fqdn,
                )
        else:
            return '<%s@%s>' % (self.revision, self.environment.fqdn)

    def headers(self):
        headers = [
            'X-Git-Author: %s' % (header_encode(self.author_name, 'X-Git-Author'),),
            'X-Git-Revision: %s' % (self.revision,),
            'X-Git-Repository: %s' % (self.environment.repository_name,),
            'X-Git-Commit-Id: %s' % (self.revision,),
            'Message-ID: %s' % (self.message_id,),
            ]
        headers.extend(self.related_mail_headers())
        return headers

    def related_mail_headers(self):
        if not self.merge_commits:
            return []
        message_ids = [merge_info.message_id for merge_info in self.merge_commits]
        return [
            'In-Reply-To: %s' % (message_ids[0],),
            'References: %s' % (' '.join(message_ids),),
            ]

    def affected_paths(self):
        """Return the distinct top-level names of the files touched by this commit."""

        paths = []
        for diff in self.diffs:
            components = [c for c in diff.file_path.split('/') if c]
            if components and components[0] not in paths:
                paths.append(components[0])
        return paths

    def format_mail_subject(self):
        affected_path_info = ''
        if self.environment.show_path:
            paths = self.affected_paths()
            if paths:
                affected_path_info = ' (%s)' % (','.join(paths),)
        return '[%s%s] %s' % (self.short_reference, affected_path_info, self.subject)

    def format_mail_body_text(self):
        return TextMailBodyFormatter(self).format()

    def format_mail_body_html(self):
        return HTMLMailBodyFormatter(self).format()

    def file_index(self, name):
        try:
            return self.files.index(name)
        except ValueError:
            return None

    def parse_file_status(self):
        lines = self.git.read_lines(
            ['log', '-n', '1', '--pretty=format:', '-C', '--name-status', self.revision]
            )
        for line in lines:
            if not line.strip():
                continue
            fields = line.split('\t')
            if len(fields) == 2:
                (status, file) = (fields[0], unescape_file_path(fields[1]))
                if status.startswith('A'):
                    self.added_files.append(file)
                elif status.startswith('M'):
                    self.updated_files.append(file)
                elif status.startswith('D'):
                    self.deleted_files.append(file)
                elif status.startswith('T'):
                    self.type_changed_files.append(file)
                else:
                    raise UnsupportedStatusLine(line)
                self.files.append(file)
            elif len(fields) == 3:
                status = fields[0]
                from_file = unescape_file_path(fields[1])
                to_file = unescape_file_path(fields[2])
                if status.startswith('R'):
                    self.renamed_files.append((from_file, to_file))
                elif status.startswith('C'):
                    self.copied_files.append((from_file, to_file))
                else:
                    raise UnsupportedStatusLine(line)
                self.files.append(to_file)
            else:
                raise UnsupportedStatusLine(line)

    def read_patch(self):
        """Return the decoded lines of this commit's patch.

        Stop reading (and set diff_truncated) as soon as the patch
        grows beyond environment.max_diff_size bytes."""

        max_diff_size = self.environment.max_diff_size
        output = []
        n_bytes = 0
        lines = self.git.stream_lines(
            ['log', '-n', '1', '--pretty=format:', '-C', '-p', self.revision]
            )
        try:
            for line in lines:
                n_bytes += len(line)
                if max_diff_size is not None and n_bytes > max_diff_size:
                    self.diff_truncated = True
                    break
                output.append(decode_diff_line(line))
        finally:
            lines.close()
        return output

    def parse_diff(self):
        output = self.read_patch()

        # Skip the empty line(s) that the empty log format leaves
        # before the first diff.
        while output and not output[0].strip():
            output.pop(0)

        sections = []
        for line in output:
            if line.startswith(FileDiff.HEADER_PREFIX) or not sections:
                sections.append([line])
            else:
                sections[-1].append(line)

        if not sections:
            return

        old_revision = self.first_parent or ZEROS
        old_date = None
        if self.first_parent and self.environment.add_diff:
            old_date = int(self.git.get_record(self.first_parent, '%at'))

        for lines in sections:
            diff = FileDiff.parse(lines)
            diff.index = self.file_index(diff.file_path)
            diff.set_revisions(old_revision, old_date, self.revision, self.date)
            self.diffs.append(diff)


def detect_change_type(old_revision, new_revision):
    old_is_null = is_null_revision(old_revision)
    new_is_null = is_null_revision(new_revision)
    if old_is_null and new_is_null:
        raise InvalidRevisionRange(old_revision, new_revision)
    elif new_is_null:
        return DELETE
    elif old_is_null:
        return CREATE
    else:
        return UPDATE


TAG_REF_RE = re.compile(r'^refs/tags/.')
BRANCH_REF_RE = re.compile(r'^refs/(heads|remotes/origin)/.')
TRACKING_REF_RE = re.compile(r'^refs/remotes/.')


def detect_reference_type(reference, object_type):
    """Decide what kind of reference was changed.

    object_type is the type of the git object the reference points at
    (after the change, or before it for a deletion).  Raise
    SuppressedUpdate for tracking branches of remotes other than
    origin, which are not announced."""

    if TAG_REF_RE.match(reference) and object_type == 'commit':
        return UNANNOTATED_TAG
    elif TAG_REF_RE.match(reference) and object_type == 'tag':
        return ANNOTATED_TAG
    elif BRANCH_REF_RE.match(reference) and object_type == 'commit':
        return BRANCH
    elif TRACKING_REF_RE.match(reference) and object_type == 'commit':
        raise SuppressedUpdate(reference)
    else:
        raise UnknownReferenceUpdate(reference, object_type)


class ReferenceChange(object):
    """A single reference update and everything that is announced about it.

    A ReferenceChange classifies the update, builds the PushInfo
    summarizing it, creates one CommitInfo per new commit (plus the
    commits brought in by merges, see MergeWalker) and finally turns
    them into emails.  It owns the map from revisions to CommitInfo
    objects and the memoized list of revisions that are reachable from
    other references; nothing else modifies them."""

    def __init__(self, environment, git, old_revision, new_revision, reference):
        self.environment = environment
        self.git = git
        self.old_revision = old_revision
        self.new_revision = new_revision
        self.reference = reference

        self.change_type = None
        self.reference_type = None
        self.push_info = None
        self.commit_infos = []
        self.commit_info_map = {}
        self._excluded_revisions = None

    @property
    def short_old_revision(self):
        return short_revision(self.old_revision)

    @property
    def short_new_revision(self):
        return short_revision(self.new_revision)

    def get_subject(self, revision):
        return self.git.get_record(revision, '%s')

    def expand(self, template):
        return template % dict(
            oldrev_short=self.short_old_revision,
            newrev_short=self.short_new_revision,
            refname=self.reference,
            )

    def create_commit_info(self, revision):
        commit_info = CommitInfo(self.environment, self.git, self.reference, revision)
        self.commit_info_map[revision] = commit_info
        return commit_info

    def detect_revision_type(self):
        if self.change_type == DELETE:
            return self.git.object_type(self.old_revision)
        else:
            return self.git.object_type(self.new_revision)

    def collect_push_information(self):
        """Classify the change and compute the push summary message.

        Return (log, commits, fast_forward, explanation)."""

        self.change_type = detect_change_type(self.old_revision, self.new_revision)
        self.reference_type = detect_reference_type(
            self.reference, self.detect_revision_type()
            )
        handler = self.HANDLERS[self.change_type, self.reference_type]
        return handler(self)

    def excluded_revisions(self):
        """Return a 'git rev-list --stdin' spec excluding all other references.

        Every branch, remote-tracking branch and tag other than the one
        being changed contributes a "^SHA1" line, so that commits
        already known through another reference are not announced as
        new.  The value is computed once per reference change."""

        if self._excluded_revisions is None:
            sha1s = set()
            for line in self.git.read_lines([
                    'for-each-ref', '--format=%(objectname) %(refname)',
                    'refs/heads', 'refs/remotes', 'refs/tags',
                    ]):
                (sha1, refname) = line.split(' ', 1)
                if refname != self.reference:
                    sha1s.add(sha1)
            self._excluded_revisions = ''.join(
                '^%s\n' % (sha1,) for sha1 in sorted(sha1s)
                )
        return self._excluded_revisions

    def new_revisions(self, *revision_args):
        """List the revisions selected by revision_args minus other references, oldest first."""

        revisions = self.git.rev_list(revision_args, input=self.excluded_revisions())
        revisions.reverse()
        return revisions

    def process_create_branch(self):
        message = 'Branch (%s) is created.\n' % (self.reference,)
        commits = self.new_revisions(self.new_revision)

        commit_list = [
            '     via  %s %s\n' % (short_revision(revision), self.get_subject(revision))
            for revision in commits
            ]
        if commit_list:
            commit_list[-1] = re.sub(r'^     via  ', '     at   ', commit_list[-1])
            message += ''.join(commit_list)

        return (message, commits, False, None)

    def process_backward_update(self):
        """List the revisions that this update removed from the branch.

        For a fast-forward update there are none; the previous tip is
        listed instead.  Return (fast_forward, summary_lines)."""

        commits_summary = []
        for revision in self.git.rev_list(['%s..%s' % (self.new_revision, self.old_revision)]):
            commits_summary.append(
                'discards  %s %s\n' % (short_revision(revision), self.get_subject(revision))
                )
        fast_forward = not commits_summary
        if fast_forward:
            commits_summary.append(
                '    from  %s %s\n'
                % (self.short_old_revision, self.get_subject(self.old_revision))
                )
        return (fast_forward, commits_summary)

    def process_forward_update(self):
        """List the revisions that this update added to the branch, newest first.

        The list can include revisions that were already announced
        through another reference; they are shown to make the whole
        change understandable."""

        return [
            '     via  %s %s\n' % (short_revision(revision), self.get_subject(revision))
            for revision in self.git.rev_list(['%s..%s' % (self.old_revision, self.new_revision)])
            ]

    def explain_special_case(self):
        """Explain a non-fast-forward update.

        Either the branch was only rewound (the new revision is an
        ancestor of the old one) or it was rewound and then got new
        revisions on top.  Return (rewind_only, explanation)."""

        base_revision = self.git.merge_base(self.old_revision, self.new_revision)
        if base_revision == self.new_revision:
            return (True, self.expand(REWIND_ONLY_TEMPLATE))
        else:
            return (False, self.expand(NON_FF_TEMPLATE))

    def process_update_branch(self):
        message = 'Branch (%s) is updated.\n' % (self.reference,)

        (fast_forward, backward_commits_summary) = self.process_backward_update()
        forward_commits_summary = self.process_forward_update()
        forward_commits_summary.reverse()

        rewind_only = False
        explanation = None
        if not fast_forward:
            (rewind_only, explanation) = self.explain_special_case()
            message += explanation

        message += '\n'
        message += ''.join(backward_commits_summary + forward_commits_summary)

        new_commits = []
        if not rewind_only:
            new_commits = self.new_revisions(
                '%s..%s' % (self.old_revision, self.new_revision)
                )
        if not new_commits:
            message += '\n'
            message += NO_NEW_REVISIONS_TEMPLATE

        return (message, new_commits, fast_forward, explanation)

    def process_delete_branch(self):
        message = (
            'Branch (%s) is deleted.\n'
            '       was  %s\n\n'
            % (self.reference, self.old_revision)
            )
        message += self.git.read_output(
            ['show', '-s', '--pretty=oneline', self.old_revision], keepends=True,
            )
        return (message, [], False, None)

    def previous_tag_by_revision(self, revision):
        """Return the name of the tag preceding revision, or None.

        If the tagged object is a commit, this tag is assumed to be a
        release, and the tag it replaces is the nearest tag reachable
        from the commit's parent."""

        try:
            parent = self.git.parent_commit(revision)
        except NoParentCommit:
            return None
        try:
            return self.git.read_output(['describe', '--abbrev=0', parent]) or None
        except CommandError:
            return None

    def short_log(self, revision_specifier):
        log = self.git.read_output(
            ['rev-list', '--pretty=short', revision_specifier], keepends=True,
            )
        return self.git.read_output(['shortlog'], input=log, keepends=True)

    def short_log_from_previous_tag(self, previous_tag):
        if previous_tag:
            # Show changes since the previous release
            return self.short_log('%s..%s' % (previous_tag, self.new_revision))
        else:
            # No previous tag, show all the changes since time began
            return self.short_log(self.new_revision)

    def annotated_tag_content(self):
        tagger = self.git.read_output(
            ['for-each-ref', '--format=%(taggername)', self.reference]
            )
        tagged = self.git.read_output(
            ['for-each-ref', '--format=%(taggerdate:rfc2822)', self.reference]
            )
        message = ' tagged by  %s\n' % (tagger,)
        parsed_date = parsedate_tz(tagged)
        if parsed_date:
            message += '        on  %s\n\n' % (format_time(mktime_tz(parsed_date)),)
        else:
            message += '        on  %s\n\n' % (tagged,)

        # Show the content of the tag message; this might contain a
        # change log or release notes so is worth displaying.
        contents = self.git.read_output(['cat-file', 'tag', self.new_revision])
        (_, _, body) = contents.partition('\n\n')
        message += body + '\n'
        return message

    def process_annotated_tag(self):
        tag_object = self.git.read_output(
            ['for-each-ref', '--format=%(*objectname)', self.reference]
            )
        tag_type = self.git.read_output(
            ['for-each-ref', '--format=%(*objecttype)', self.reference]
            )

        message = '   tagging  %s (%s)\n' % (tag_object, tag_type)
        if tag_type == 'commit':
            previous_tag = self.previous_tag_by_revision(self.new_revision)
            if previous_tag:
                message += '  replaces  %s\n' % (previous_tag,)
            message += self.annotated_tag_content()
            message += self.short_log_from_previous_tag(previous_tag)
        else:
            message += '    length  %s bytes\n' % (
                self.git.read_output(['cat-file', '-s', tag_object]),
                )
            message += self.annotated_tag_content()
        return message

    def process_create_annotated_tag(self):
        message = (
            'Annotated tag (%s) is created.\n'
            '        at  %s (tag)\n'
            % (self.reference, self.new_revision)
            )
        return (message + self.process_annotated_tag(), [], False, None)

    def process_update_annotated_tag(self):
        message = (
            'Annotated tag (%s) is updated.\n'
            '        to  %s (tag)\n'
            '      from  %s (which is now obsolete)\n'
            % (self.reference, self.new_revision, self.old_revision)
            )
        return (message + self.process_annotated_tag(), [], False, None)

    def process_delete_annotated_tag(self):
        message = (
            'Annotated tag (%s) is deleted.\n'
            '       was  %s\n\n'
            % (self.reference, self.old_revision)
            )
        shown = self.git.read_output(
            ['show', '-s', '--pretty=oneline', self.old_revision], keepends=True,
            )
        shown = re.sub(r'(?m)^Tagger.*$', '', shown, count=1)
        shown = re.sub(r'(?m)^Date.*$', '', shown, count=1)
        shown = re.sub(r'\n{2,}', '\n\n', shown, count=1)
        return (message + shown, [], False, None)

    def process_unannotated_tag(self, revision):
        return self.git.read_output(
            ['show', '--no-color', '--root', '-s', '--pretty=short', revision],
            keepends=True,
            )

    def process_create_unannotated_tag(self):
        message = (
            'Unannotated tag (%s) is created.\n'
            '        at  %s (commit)\n\n'
            % (self.reference, self.new_revision)
            )
        message += self.process_unannotated_tag(self.new_revision)
        previous_tag = self.previous_tag_by_revision(self.new_revision)
        if previous_tag:
            message += '\n  replaces  %s\n\n' % (previous_tag,)
            message += self.short_log_from_previous_tag(previous_tag)
        return (message, [], False, None)

    def process_update_unannotated_tag(self):
        message = (
            'Unannotated tag (%s) is updated.\n'
            '        to  %s (commit)\n'
            '      from  %s (commit)\n\n'
            % (self.reference, self.new_revision, self.old_revision)
            )
        message += self.process_unannotated_tag(self.new_revision)
        return (message, [], False, None)

    def process_delete_unannotated_tag(self):
        message = (
            'Unannotated tag (%s) is deleted.\n'
            '       was  %s (commit)\n\n'
            % (self.reference, self.old_revision)
            )
        message += self.process_unannotated_tag(self.old_revision)
        return (message, [], False, None)

    HANDLERS = {
        (CREATE, BRANCH): process_create_branch,
        (UPDATE, BRANCH): process_update_branch,
        (DELETE, BRANCH): process_delete_branch,
        (CREATE, ANNOTATED_TAG): process_create_annotated_tag,
        (UPDATE, ANNOTATED_TAG): process_update_annotated_tag,
        (DELETE, ANNOTATED_TAG): process_delete_annotated_tag,
        (CREATE, UNANNOTATED_TAG): process_create_unannotated_tag,
        (UPDATE, UNANNOTATED_TAG): process_update_unannotated_tag,
        (DELETE, UNANNOTATED_TAG): process_delete_unannotated_tag,
        }

    def make_infos(self):
        """Build the PushInfo and the CommitInfos for this change.

        Return False (and build nothing) if the change is not to be
        announced."""

        try:
            (log, commits, fast_forward, explanation) = self.collect_push_information()
        except SuppressedUpdate as e:
            self.environment.log_msg(
                '*** %s\n'
                '***  - no email generated.\n'
                % (e,)
                )
            return False

        self.push_info = PushInfo(
            self.environment, self.git,
            self.old_revision, self.new_revision, self.reference,
            self.reference_type, self.change_type, log, commits,
            fast_forward=fast_forward, explanation=explanation,
            )
        if self.push_info.branch_changed():
            for revision in self.push_info.commits:
                self.commit_infos.append(self.create_commit_info(revision))

        MergeWalker(self).walk()
        return True


class MergeWalker(object):
    """Add the commits brought in by merges to a reference change.

    For every merge commit among the commits of a reference change,
    walk each merged side branch back (along first parents) to where
    it forked, and insert a CommitInfo for every commit found there
    just before the commit that descends from it.  Commits on a side
    branch are annotated with the merge that pulled them in; merges
    found on a side branch are walked in turn.

    The walk is driven by an explicit stack, so deeply nested merge
    histories cannot exhaust the interpreter's recursion limit.  It
    only ever adds records and annotations that are missing, so
    walking the same change twice changes nothing."""

    def __init__(self, reference_change):
        self.reference_change = reference_change
        self.git = reference_change.git

    def walk(self):
        for commit_info in reversed(list(self.reference_change.commit_infos)):
            if commit_info.is_merge():
                self.traverse_merge_commit(commit_info)

    def traverse_merge_commit(self, merge_info):
        stack = [self._walk_merge(merge_info)]
        while stack:
            try:
                nested_merge_info = next(stack[-1])
            except StopIteration:
                stack.pop()
            else:
                stack.append(self._walk_merge(nested_merge_info))

    def _find_or_create(self, revision, descendant_revision):
        change = self.reference_change
        commit_info = change.commit_info_map.get(revision)
        if commit_info is not None:
            commit_info.reference = change.reference
            return commit_info

        commit_info = change.create_commit_info(revision)
        descendant = change.commit_info_map[descendant_revision]
        position = next(
            i for (i, info) in enumerate(change.commit_infos) if info is descendant
            )
        change.commit_infos.insert(position, commit_info)
        return commit_info

    def _walk_merge(self, merge_info):
        """Walk all parents of merge_info back to their bases.

        This is a generator: it yields every merge commit found on the
        way and expects the caller to walk it completely before
        resuming this one."""

        try:
            first_grand_parent = self.git.parent_commit(merge_info.first_parent)
        except NoParentCommit:
            first_grand_parent = None

        for revision in [merge_info.first_parent] + merge_info.other_parents:
            is_traversing_first_parent = (revision == merge_info.first_parent)
            base_revisions = [self.reference_change.old_revision]
            if first_grand_parent is not None:
                base_revisions.append(self.git.merge_base(first_grand_parent, revision))
            descendant_revision = merge_info.revision

            while revision is not None and revision not in base_revisions:
                commit_info = self._find_or_create(revision, descendant_revision)
                if not is_traversing_first_parent:
                    commit_info.add_merge(merge_info)

                if commit_info.is_merge():
                    yield commit_info
                    if first_grand_parent is not None:
                        base_revision = self.git.merge_base(
                            first_grand_parent, commit_info.first_parent
                            )
                        if base_revision not in base_revisions:
                            base_revisions.append(base_revision)

                (descendant_revision, revision) = (revision, commit_info.first_parent)


class MailBodyFormatter(object):
    """Base class of the commit email body formatters.

    Knows how to link to the configured repository browser."""

    def __init__(self, info):
        self.info = info
        self.environment = info.environment

    def format(self):
        raise NotImplementedError()

    def truncation_notice(self):
        return '... diff truncated to %s' % (format_size(self.environment.max_diff_size),)

    def github_repository_url(self):
        environment = self.environment
        if not (environment.github_user and environment.github_repository):
            return None
        return '%s/%s/%s' % (
            environment.github_base_url.rstrip('/'),
            environment.github_user, environment.github_repository,
            )

    def commit_url(self):
        browser = self.environment.repository_browser
        if browser == 'github':
            base_url = self.github_repository_url()
            if base_url is None:
                return None
            return '%s/commit/%s' % (base_url, self.info.revision)
        elif browser == 'github-wiki':
            files = self.info.updated_files + self.info.added_files
            if not files:
                return None
            return self.commit_file_url_github_wiki(files[0])
        elif browser == 'gitlab':
            if not self.environment.gitlab_project_uri:
                return None
            return '%s/commit/%s' % (
                self.environment.gitlab_project_uri.rstrip('/'), self.info.revision,
                )
        else:
            return None

    def commit_file_url(self, file):
        browser = self.environment.repository_browser
        if browser == 'github':
            base_url = self.commit_url()
            index = self.info.file_index(file)
            if base_url is None or index is None:
                return None
            return '%s#diff-%d' % (base_url, index)
        elif browser == 'github-wiki':
            return self.commit_file_url_github_wiki(file)
        else:
            return None

    def commit_file_url_github_wiki(self, file):
        base_url = self.github_repository_url()
        if file is None or base_url is None:
            return None
        page_name = re.sub(r'\.[^.]+$', '', file)
        return '%s/wiki/%s/%s' % (base_url, quote(page_name, safe=''), self.info.revision)

    def commit_file_line_number_url(self, file, direction, line_number):
        """Link to a line of a file's diff; direction is 'from' or 'to'.

        If line_number is None, link to the start of the file's diff."""

        if self.environment.repository_browser != 'github':
            return None
        base_url = self.commit_url()
        index = self.info.file_index(file)
        if base_url is None or index is None:
            return None
        url = '%s#diff-%d' % (base_url, index)
        if line_number:
            if direction == 'from':
                url += 'L%d' % (line_number,)
            else:
                url += 'R%d' % (line_number,)
        return url


class TextMailBodyFormatter(MailBodyFormatter):
    def format(self):
        info = self.info
        body = '%s\t%s\n' % (info.author_name, format_time(info.date))
        body += '\n\n'
        body += '  New Revision: %s\n' % (info.revision,)
        body += self.format_commit_url()
        body += '\n'

        if info.merge_messages:
            for merge_message in info.merge_messages:
                body += '  %s\n' % (merge_message,)
            body += '\n'

        body += '  Message:\n'
        for line in info.summary.rstrip().split('\n'):
            body += ('    %s' % (line,)).rstrip() + '\n'
        body += '\n'

        body += self.format_files('Added', info.added_files)
        body += self.format_files('Copied', info.copied_files)
        body += self.format_files('Removed', info.deleted_files)
        body += self.format_files('Modified', info.updated_files)
        body += self.format_files('Renamed', info.renamed_files)
        body += self.format_files('Type Changed', info.type_changed_files)
        body += '\n'

        body += self.format_diff()
        body += self.format_truncation()
        return re.sub(r'\n+\Z', '\n', body)

    def format_commit_url(self):
        url = self.commit_url()
        if url is None:
            return ''
        return '  %s\n' % (url,)

    def format_files(self, title, items):
        if not items:
            return ''

        formatted_files = '  %s files:\n' % (title,)
        for item in items:
            if isinstance(item, tuple):
                (from_file, to_file) = item
                formatted_files += '    %s\n' % (to_file,)
                formatted_files += '      (from %s)\n' % (from_file,)
            else:
                formatted_files += '    %s\n' % (item,)
        return formatted_files

    def format_diff(self):
        return '\n'.join(
            diff.format(add_diff=self.environment.add_diff)
            for diff in self.info.diffs
            )

    def format_truncation(self):
        if not self.info.diff_truncated:
            return ''
        return '\n%s\n' % (self.truncation_notice(),)


def pair_changed_lines(lines):
    """Pair up lines that were changed in place.

    lines is a list of DiffLines.  A run of deleted lines followed
    directly by a run of the same number of added lines is taken to be
    a set of modified lines; return the list of (deleted_index,
    added_index) pairs over all such runs."""

    pairs = []
    i = 0
    while i < len(lines):
        if lines[i].type != DiffLine.DELETED:
            i += 1
            continue
        deleted_start = i
        while i < len(lines) and lines[i].type == DiffLine.DELETED:
            i += 1
        added_start = i
        while i < len(lines) and lines[i].type == DiffLine.ADDED:
            i += 1
        if added_start - deleted_start == i - added_start:
            pairs.extend(zip(range(deleted_start, added_start), range(added_start, i)))
    return pairs


class WordDiff(object):
    """Align an old and a new version of a line.

    The lines are split into words, runs of whitespace and single
    punctuation characters, and aligned with difflib.  Words that were
    replaced are aligned again character by character, so that a small
    change inside a word only marks the characters that differ.  The
    *_segments() methods return the line as a list of (changed, text)
    pairs."""

    WORD_RE = re.compile(r'\w+|\s+|[^\w\s]', re.UNICODE)

    # Replaced words less similar than this are marked as a whole.
    MIN_CHARACTER_RATIO = 0.5

    def __init__(self, old_text, new_text):
        self.old = []
        self.new = []
        old_words = self.WORD_RE.findall(old_text)
        new_words = self.WORD_RE.findall(new_text)
        matcher = difflib.SequenceMatcher(None, old_words, new_words, autojunk=False)
        for (tag, i1, i2, j1, j2) in matcher.get_opcodes():
            old_part = ''.join(old_words[i1:i2])
            new_part = ''.join(new_words[j1:j2])
            if tag == 'replace':
                self.align_characters(old_part, new_part)
            else:
                changed = (tag != 'equal')
                self.add(self.old, changed, old_part)
                self.add(self.new, changed, new_part)

    def align_characters(self, old_part, new_part):
        matcher = difflib.SequenceMatcher(None, old_part, new_part, autojunk=False)
        if matcher.ratio() < self.MIN_CHARACTER_RATIO:
            self.add(self.old, True, old_part)
            self.add(self.new, True, new_part)
            return
        for (tag, i1, i2, j1, j2) in matcher.get_opcodes():
            changed = (tag != 'equal')
            self.add(self.old, changed, old_part[i1:i2])
            self.add(self.new, changed, new_part[j1:j2])

    @staticmethod
    def add(segments, changed, text):
        if not text:
            return
        if segments and segments[-1][0] == changed:
            segments[-1] = (changed, segments[-1][1] + text)
        else:
            segments.append((changed, text))

    def old_segments(self):
        return list(self.old)

    def new_segments(self):
        return list(self.new)


class HTMLMailBodyFormatter(MailBodyFormatter):
    FONT_FAMILIES = ['Consolas', 'Menlo', '"Liberation Mono"', 'Courier', 'monospace']

    DT_MARGIN = 8

    HUNK_HEADER_RE = re.compile(r'^(?P<info>@@[\s0-9\-+,]+@@\s*)(?P<context>.+)$')

    GITHUB_REFERENCE_RE = re.compile(
        r'(?<![&\w])#(?P<issue>\d+)\b'
        r'|(?<![\w/])(?=[a-f]*[0-9])(?=[0-9]*[a-f])(?P<sha>[0-9a-f]{7,40})(?!\w)'
        r'|(?<![\w.])@(?P<user>[A-Za-z0-9][A-Za-z0-9-]*)'
        )

    def __init__(self, info):
        MailBodyFormatter.__init__(self, info)
        self.indent_level = 0

    def format(self):
        self.indent_level = 0
        info = self.info
        lines = [
            '<!DOCTYPE html>',
            '<html>',
            '  <head>',
            '  </head>',
            '  <body>',
            '    %s' % (self.dl_start(),),
            '      %s' % (self.dt('Author'),),
            '      %s' % (self.dd(escape('%s <%s>' % (info.author_name, info.author_email))),),
            '      %s' % (self.dt('Date'),),
            '      %s' % (self.dd(escape(format_time(info.date))),),
            '      %s' % (self.dt('New Revision'),),
            '      %s' % (self.dd(self.format_revision()),),
            ]
        if info.merge_messages:
            lines.append('      %s' % (self.dt('Merge'),))
            lines.append('      %s' % (self.dd_start(),))
            lines.append('        <ul>')
            for merge_message in info.merge_messages:
                lines.append('          <li>%s</li>' % (escape(merge_message),))
            lines.append('        </ul>')
            lines.append('      </dd>')
        lines.append('      %s' % (self.dt('Message'),))
        lines.append('      %s' % (self.dd(self.format_summary(info.summary.strip())),))
        lines.extend(self.format_files('Added', info.added_files))
        lines.extend(self.format_files('Copied', info.copied_files))
        lines.extend(self.format_files('Removed', info.deleted_files))
        lines.extend(self.format_files('Modified', info.updated_files))
        lines.extend(self.format_files('Renamed', info.renamed_files))
        lines.extend(self.format_files('Type Changed', info.type_changed_files))
        lines.append('    </dl>')
        lines.append('')
        lines.extend(self.format_diffs())
        if info.diff_truncated:
            notice = self.span_diff_header(escape(self.truncation_notice()))
            lines.append('    %s' % (self.tag('p', None, notice),))
        lines.append('  </body>')
        lines.append('</html>')
        return '\n'.join(lines) + '\n'

    def format_revision(self):
        url = self.commit_url()
        if url:
            return self.tag('a', {'href': url}, escape(self.info.revision))
        return escape(self.info.revision)

    def format_files(self, title, items):
        if not items:
            return []

        lines = [
            '      %s' % (self.dt(escape(title) + ' files'),),
            '      %s' % (self.dd_start(),),
            '        <ul>',
            ]
        for item in items:
            if isinstance(item, tuple):
                (from_file, to_file) = item
                lines.append('          <li>')
                lines.append('            %s<br>' % (self.format_file(to_file),))
                lines.append('            (from %s)' % (escape(from_file),))
                lines.append('          </li>')
            else:
                lines.append('          <li>%s</li>' % (self.format_file(item),))
        lines.append('        </ul>')
        lines.append('      </dd>')
        return lines

    def format_file(self, file):
        content = escape(file)
        url = self.commit_file_url(file)
        if url:
            content = self.tag('a', {'href': url}, content)
        return content

    def format_diffs(self):
        if not self.info.diffs:
            return []

        lines = ['    %s' % (self.div_diff_section_start(),)]
        self.indent_level = 3
        for diff in self.info.diffs:
            lines.append(self.format_diff(diff))
        lines.append('    </div>')
        return lines

    def format_diff(self, diff):
        header_column = self.format_header_column(diff)
        (from_line_column, to_line_column, content_column) = self.format_body_columns(diff)

        def head():
            return [self.block('tr', self.diff_header_attributes(), lambda: [
                self.block('td', {'colspan': '3'}, lambda: [self.pre_column(header_column)]),
                ])]

        def body():
            return [self.block('tr', None, lambda: [
                self.th_diff_line_number(from_line_column),
                self.th_diff_line_number(to_line_column),
                self.td_diff_content(content_column),
                ])]

        return self.table_diff(lambda: [
            self.block('thead', None, head),
            self.block('tbody', None, body),
            ])

    def format_header_column(self, diff):
        header_column = ''
        for line in diff.format_header().splitlines():
            if line.startswith('='):
                header_column += self.span_diff_header_mark(escape(line))
            else:
                header_column += self.span_diff_header(escape(line))
            header_column += '\n'
        return header_column

    def format_changed_line(self, text, segments, side):
        formatted = escape(text[:1])
        for (changed, segment) in segments:
            if changed:
                formatted += self.span_diff_word(escape(segment), side)
            else:
                formatted += escape(segment)
        return formatted

    def highlight_changed_words(self, lines):
        """Return {line index: formatted content} for lines changed in place."""

        highlighted = {}
        for (deleted_index, added_index) in pair_changed_lines(lines):
            old_text = lines[deleted_index].text
            new_text = lines[added_index].text
            word_diff = WordDiff(old_text[1:], new_text[1:])
            highlighted[deleted_index] = self.format_changed_line(
                old_text, word_diff.old_segments(), 'deleted',
                )
            highlighted[added_index] = self.format_changed_line(
                new_text, word_diff.new_segments(), 'added',
                )
        return highlighted

    def format_body_columns(self, diff):
        from_line_column = ''
        to_line_column = ''
        content_column = ''
        file_path = diff.file_path
        highlighted = self.highlight_changed_words(diff.lines)
        for (index, line) in enumerate(diff.lines):
            if line.type == DiffLine.HUNK_HEADER:
                from_line_column += self.span_line_number_hunk_header(
                    file_path, 'from', line.from_line_number,
                    )
                to_line_column += self.span_line_number_hunk_header(
                    file_path, 'to', line.to_line_number,
                    )
                m = self.HUNK_HEADER_RE.match(line.text)
                if m:
                    formatted_line = (
                        escape(m.group('info'))
                        + self.span_diff_context(escape(m.group('context')))
                        )
                else:
                    formatted_line = escape(line.text)
                content_column += self.span_diff_hunk_header(formatted_line)
            elif line.type == DiffLine.ADDED:
                from_line_column += self.span_line_number_nothing()
                to_line_column += self.span_line_number_added(file_path, line.to_line_number)
                content_column += self.span_diff_added(
                    highlighted.get(index, escape(line.text))
                    )
            elif line.type == DiffLine.DELETED:
                from_line_column += self.span_line_number_deleted(
                    file_path, line.from_line_number,
                    )
                to_line_column += self.span_line_number_nothing()
                content_column += self.span_diff_deleted(
                    highlighted.get(index, escape(line.text))
                    )
            else:
                from_line_column += self.span_line_number_not_changed(
                    file_path, 'from', line.from_line_number,
                    )
                to_line_column += self.span_line_number_not_changed(
                    file_path, 'to', line.to_line_number,
                    )
                content_column += self.span_diff_not_changed(escape(line.text))
            from_line_column += '\n'
            to_line_column += '\n'
            content_column += '\n'
        return (from_line_column, to_line_column, content_column)

    def reference_urls(self):
        """Return (issue_url, commit_url, user_url) templates for the browser, or None."""

        browser = self.environment.repository_browser
        if browser == 'github':
            base_url = self.github_repository_url()
            if base_url is None:
                return None
            return (
                base_url + '/issues/%s',
                base_url + '/commit/%s',
                self.environment.github_base_url.rstrip('/') + '/%s',
                )
        elif browser == 'gitlab' and self.environment.gitlab_project_uri:
            project_uri = self.environment.gitlab_project_uri.rstrip('/')
            m = re.match(r'^(?P<site>[^:/]+://[^/]+)', project_uri)
            site = m.group('site') if m else project_uri
            return (
                project_uri + '/issues/%s',
                project_uri + '/commit/%s',
                site + '/%s',
                )
        return None

    def link_references(self, text):
        """Turn issue numbers, commit SHA1s and @mentions in escaped text into links."""

        urls = self.reference_urls()
        if urls is None:
            return text
        (issue_url, commit_url, user_url) = urls

        def replace(m):
            if m.group('issue'):
                url = issue_url % (m.group('issue'),)
            elif m.group('sha'):
                url = commit_url % (m.group('sha'),)
            else:
                url = user_url % (m.group('user'),)
            return self.tag('a', {'href': url}, m.group(0))

        return self.GITHUB_REFERENCE_RE.sub(replace, text)

    def format_summary(self, summary):
        return self.pre(self.link_references(escape(summary)))

    def tag_start(self, name, attributes=None):
        start_tag = '<%s' % (name,)
        if attributes:
            formatted_attributes = []
            for key in sorted(attributes):
                value = attributes[key]
                if isinstance(value, dict):
                    value = ['%s: %s' % item for item in sorted(value.items())]
                if isinstance(value, list):
                    value = '; '.join(sorted(value))
                formatted_attributes.append('%s="%s"' % (escape(key), escape(str(value))))
            start_tag += ' ' + ' '.join(formatted_attributes)
        return start_tag + '>'

    def tag(self, name, attributes=None, content=''):
        return '%s%s</%s>' % (self.tag_start(name, attributes), content, name)

    def block(self, name, attributes, build):
        """Format a tag whose children are returned by build(), one per line."""

        self.indent_level += 1
        children = [
            child if child.startswith(' ') else '  ' * self.indent_level + child
            for child in build()
            ]
        self.indent_level -= 1
        indent = '  ' * self.indent_level
        return '%s%s\n%s\n%s</%s>' % (
            indent, self.tag_start(name, attributes), '\n'.join(children), indent, name,
            )

    def dl_start(self):
        return self.tag_start('dl', {
            'style': {
                'margin-left': '2em',
                'line-height': '1.5',
                },
            })

    def dt(self, content):
        return self.tag('dt', {
            'style': {
                'clear': 'both',
                'float': 'left',
                'width': '%dem' % (self.DT_MARGIN,),
                'font-weight': 'bold',
                },
            }, content)

    def dd_start(self):
        return self.tag_start('dd', {
            'style': {
                'margin-left': '%gem' % (self.DT_MARGIN + 0.5,),
                },
            })

    def dd(self, content):
        return '%s%s</dd>' % (self.dd_start(), content)

    def border_styles(self):
        return {'border': '1px solid #aaa'}

    def pre(self, content, styles=None):
        pre_styles = {
            'font-family': ', '.join(self.FONT_FAMILIES),
            'line-height': '1.2',
            'padding': '0.5em',
            'width': 'auto',
            }
        pre_styles.update(self.border_styles())
        pre_styles.update(styles or {})
        return self.tag('pre', {'style': pre_styles}, content)

    def div_diff_section_start(self):
        return self.tag_start('div', {
            'class': 'diff-section',
            'style': {'clear': 'both'},
            })

    def table_diff(self, build):
        styles = self.border_styles()
        styles['border-collapse'] = 'collapse'
        return self.block('table', {'style': styles}, build)

    def diff_header_attributes(self):
        return {'class': 'diff-header', 'style': self.border_styles()}

    def th_diff_line_number(self, column):
        return self.block(
            'th',
            {'class': 'diff-line-number', 'style': self.border_styles()},
            lambda: [self.pre_column(column)],
            )

    def td_diff_content(self, column):
        return self.block(
            'td',
            {'class': 'diff-content', 'style': self.border_styles()},
            lambda: [self.pre_column(column)],
            )

    def pre_column(self, column):
        return self.pre(column, {
            'white-space': 'normal',
            'margin': '0',
            'border': '0',
            })

    def span_common_styles(self):
        return {
            'white-space': 'pre',
            'display': 'block',
            }

    def span_context_styles(self):
        return {
            'background-color': '#ffffaa',
            'color': '#000000',
            }

    def span_deleted_styles(self):
        return {
            'background-color': '#ffaaaa',
            'color': '#000000',
            }

    def span_added_styles(self):
        return {
            'background-color': '#aaffaa',
            'color': '#000000',
            }

    def span_deleted_word_styles(self):
        return {
            'background-color': '#ff7777',
            'color': '#000000',
            }

    def span_added_word_styles(self):
        return {
            'background-color': '#55ff55',
            'color': '#000000',
            }

    def span(self, klass, styles, content):
        return self.tag('span', {'class': klass, 'style': styles}, content)

    def _line_number_span(self, klass, styles, file_path, direction, line_number):
        content = escape(str(line_number))
        url = self.commit_file_line_number_url(file_path, direction, line_number)
        if url:
            content = self.tag('a', {'href': url}, content)
        return self.span(klass, styles, content)

    def span_line_number_nothing(self):
        return self.span('diff-line-number-nothing', self.span_common_styles(), '&nbsp;')

    def span_line_number_hunk_header(self, file_path, direction, offset):
        content = '...'
        if offset <= 1:
            offset_omitted = None
        else:
            offset_omitted = offset - 1
        url = self.commit_file_line_number_url(file_path, direction, offset_omitted)
        if url:
            content = self.tag('a', {'href': url}, content)
        return self.span('diff-line-number-hunk-header', self.span_common_styles(), content)

    def span_line_number_deleted(self, file_path, line_number):
        styles = self.span_common_styles()
        styles.update(self.span_deleted_styles())
        return self._line_number_span(
            'diff-line-number-deleted', styles, file_path, 'from', line_number,
            )

    def span_line_number_added(self, file_path, line_number):
        styles = self.span_common_styles()
        styles.update(self.span_added_styles())
        return self._line_number_span(
            'diff-line-number-added', styles, file_path, 'to', line_number,
            )

    def span_line_number_not_changed(self, file_path, direction, line_number):
        return self._line_number_span(
            'diff-line-number-not-changed', self.span_common_styles(),
            file_path, direction, line_number,
            )

    def span_diff_metadata_styles(self):
        styles = self.span_common_styles()
        styles.update({
            'background-color': '#eaf2f5',
            'color': '#999999',
            })
        return styles

    def span_diff_header(self, content):
        return self.span('diff-header', self.span_diff_metadata_styles(), content)

    def span_diff_header_mark(self, content):
        return self.span('diff-header-mark', self.span_diff_metadata_styles(), content)

    def span_diff_hunk_header(self, content):
        return self.span('diff-hunk-header', self.span_diff_metadata_styles(), content)

    def span_diff_context(self, content):
        return self.span('diff-context', self.span_context_styles(), content)

    def span_diff_deleted(self, content):
        styles = self.span_common_styles()
        styles.update(self.span_deleted_styles())
        return self.span('diff-deleted', styles, content)

    def span_diff_added(self, content):
        styles = self.span_common_styles()
        styles.update(self.span_added_styles())
        return self.span('diff-added', styles, content)

    def span_diff_word(self, content, side):
        if side == 'deleted':
            return self.tag('span', {
                'class': 'diff-deleted-word',
                'style': self.span_deleted_word_styles(),
                }, content)
        else:
            return self.tag('span', {
                'class': 'diff-added-word',
                'style': self.span_added_word_styles(),
                }, content)

    def span_diff_not_changed(self, content):
        return self.span('diff-not-changed', self.span_common_styles(), content)


class Environment(object):
    """Describes how and to whom notification emails are sent.

    An Environment carries every setting that affects the emails; the
    defaults below are overridden by ConfigEnvironment (from "git
    config") and then by command-line options.  It has the following
    attributes:

        repository

            The path of the git repository (its git directory).  Used
            to derive the repository name if name is not set.

        name

            The repository name shown in subjects and Message-IDs.

        to, error_to (lists of strings)

            The recipients of the notification emails and of the
            report sent when processing fails.

        from_address, from_domain, sender

            How the From: and Sender: headers are built (see
            MailBuilder.format_from()).

        add_diff, add_html, show_path, send_push_mail, send_per_to (bool)

            Switches for the contents and the number of emails.

        max_size, max_diff_size (int or None)

            Limits for the mail body and for the diff of a single
            commit, in bytes; None means no limit.

        repository_browser, github_base_url, github_user,
        github_repository, gitlab_project_uri

            Which repository browser to link to, and where it lives.

        fqdn

            The host name used in Message-IDs.  It is resolved once,
            when the environment is built.

    """

    def __init__(self, repository='.git', fqdn=None):
        self.repository = repository
        self.name = None
        self.to = []
        self.error_to = []
        self.send_per_to = False
        self.from_address = None
        self.from_domain = None
        self.sender = None
        self.server = 'localhost'
        self.port = smtplib.SMTP_PORT
        self.sleep_per_mail = 0
        self.add_diff = True
        self.add_html = False
        self.max_size = parse_size(DEFAULT_MAX_SIZE)
        self.max_diff_size = parse_size(DEFAULT_MAX_SIZE)
        self.show_path = False
        self.send_push_mail = False
        self.date = None
        self.track_remote = False
        self.verbose = False

        self.repository_browser = None
        self.github_base_url = 'https://github.com'
        self.github_user = None
        self.github_repository = None
        self.gitlab_project_uri = None

        if fqdn is None:
            fqdn = socket.getfqdn()
        self.fqdn = fqdn

    @property
    def repository_name(self):
        if self.name:
            return self.name
        path = os.path.abspath(self.repository)
        while True:
            basename = os.path.basename(path)
            if basename != '.git':
                if basename.endswith('.git'):
                    basename = basename[:-len('.git')]
                return basename
            path = os.path.dirname(path)

    def check(self):
        """Raise ConfigurationException if the settings cannot work together."""

        if not self.to:
            raise ConfigurationException(
                'The list of recipients is not configured.\n'
                'Please set "commitmailer.to" or use the --to option.'
                )
        if self.from_address and self.from_domain:
            raise ConfigurationException(
                'The "from" and "fromDomain" settings cannot be used together.'
                )
        if self.repository_browser is not None \
                and self.repository_browser not in REPOSITORY_BROWSERS:
            raise ConfigurationException(
                'Unknown repository browser %r (available repository browsers: %s)'
                % (self.repository_browser, ', '.join(REPOSITORY_BROWSERS))
                )

    def log_msg(self, msg):
        """Write the string msg on stderr."""

        sys.stderr.write(msg)

    def log_warning(self, msg):
        sys.stderr.write(msg)

    def log_error(self, msg):
        sys.stderr.write(msg)

    def log_debug(self, msg):
        """Write msg on stderr if running with --verbose."""

        if self.verbose:
            sys.stderr.write(msg)


class ConfigEnvironment(Environment):
    """An Environment that reads its settings from "git config"."""

    def __init__(self, config, repository=None):
        self.config = config
        if repository is None:
            repository = config.git.read_output(['rev-parse', '--git-dir'])
        Environment.__init__(self, repository=repository, fqdn=config.get('fqdn'))

        self.name = config.get('name', default=self.name)
        self.to = config.get_recipients('to', default=self.to)
        self.error_to = config.get_recipients('errorTo', default=self.error_to)
        self.send_per_to = config.get_bool('sendPerTo', default=self.send_per_to)
        self.from_address = config.get('from', default=self.from_address)
        self.from_domain = config.get('fromDomain', default=self.from_domain)
        self.sender = config.get('sender', default=self.sender)
        self.server = config.get('server', default=self.server)
        self.port = self._get_number('port', int, self.port)
        self.sleep_per_mail = self._get_number('sleepPerMail', float, self.sleep_per_mail)
        self.add_diff = config.get_bool('addDiff', default=self.add_diff)
        self.add_html = config.get_bool('addHtml', default=self.add_html)
        self.max_size = self._get_size('maxSize', self.max_size)
        self.max_diff_size = self._get_size('maxDiffSize', self.max_diff_size)
        self.show_path = config.get_bool('showPath', default=self.show_path)
        self.send_push_mail = config.get_bool('sendPushMail', default=self.send_push_mail)

        self.repository_browser = config.get(
            'repositoryBrowser', default=self.repository_browser
            )
        self.github_base_url = config.get('githubBaseUrl', default=self.github_base_url)
        self.github_user = config.get('githubUser', default=self.github_user)
        self.github_repository = config.get(
            'githubRepository', default=self.github_repository
            )
        self.gitlab_project_uri = config.get(
            'gitlabProjectUri', default=self.gitlab_project_uri
            )

    def _get_number(self, name, convert, default):
        value = self.config.get(name, default=None)
        if value is None:
            return default
        try:
            return convert(value)
        except ValueError:
            raise ConfigurationException(
                'Invalid value %r for "%s.%s"' % (value, self.config.section, name)
                )

    def _get_size(self, name, default):
        value = self.config.get(name, default=None)
        if value is None:
            return default
        try:
            return parse_size(value)
        except ValueError:
            raise ConfigurationException(
                'Invalid size %r for "%s.%s" (G/GB/M/MB/K/KB/B units are available)'
                % (value, self.config.section, name)
                )


def format_name(name):
    """Quote a display name for use in an address header if necessary."""

    if re.search(r'[,"\\]', name):
        return '"%s"' % (re.sub(r'(["\\])', r'\\\1', name),)
    return name


def needs_base64(text):
    """Return True iff text has a line that is too long for 8bit transfer encoding."""

    if text is None:
        return False
    return any(
        len(line.encode('utf-8')) >= MAX_LINE_BYTES
        for line in text.splitlines(True)
        )


def truncate_body(body, max_size):
    """Cut body down to less than max_size characters at a line boundary.

    A line saying that the body was truncated is appended."""

    if max_size is None or len(body) < max_size:
        return body

    truncated_body = body[:max_size]
    truncated_message = '... truncated to %s\n' % (format_size(max_size),)

    def last_line_break(end):
        return max(truncated_body.rfind('\n', 0, end), truncated_body.rfind('\r', 0, end))

    index = last_line_break(len(truncated_body))
    while index >= 0:
        if index + len(truncated_message) < max_size:
            return truncated_body[:index] + '\n' + truncated_message
        index = last_line_break(index)
    return truncated_body


MULTIPART_TEMPLATE = """\
--%(boundary)s
Content-Type: text/plain; charset=utf-8
Content-Transfer-Encoding: %(transfer_encoding)s

%(body_text)s
--%(boundary)s
Content-Type: text/html; charset=utf-8
Content-Transfer-Encoding: %(transfer_encoding)s

%(body_html)s
--%(boundary)s--
"""


class MailBuilder(object):
    """Turn Infos into complete email messages (headers and body)."""

    def __init__(self, environment):
        self.environment = environment

    def x_mailer(self):
        return 'git-commit-mailer %s; %s' % (__version__, URL)

    def generate_boundary(self):
        random_integer = int(time.time()) * 1000 + random.randrange(1000)
        return hashlib.sha1(str(random_integer).encode('ascii')).hexdigest()

    def from_address(self, info):
        """Return the bare email address that the mail about info is sent from."""

        environment = self.environment
        if environment.from_address:
            return parseaddr(environment.from_address)[1] or environment.from_address
        elif environment.from_domain:
            local_part = info.author_email.split('@', 1)[0]
            return '%s@%s' % (local_part, environment.from_domain)
        else:
            return info.author_email

    def format_from(self, info):
        environment = self.environment
        if environment.from_address \
                and re.match(r'^[^\s<]+@[^\s>]+$', environment.from_address):
            return environment.from_address
        name = header_encode(format_name(info.author_name))
        return '%s <%s>' % (name, self.from_address(info))

    def format_subject(self, info):
        subject = ''
        name = self.environment.repository_name
        if name:
            subject += '%s@' % (name,)
        subject += '%s ' % (info.short_revision,)
        subject += header_encode(info.format_mail_subject())
        return subject

    def make_header(self, transfer_encoding, to, info, boundary=None):
        headers = list(info.headers())
        headers.append('X-Mailer: %s' % (self.x_mailer(),))
        headers.append('MIME-Version: 1.0')
        if boundary:
            headers.append('Content-Type: multipart/alternative;')
            headers.append(' boundary=%s' % (boundary,))
        else:
            headers.append('Content-Type: text/plain; charset=utf-8')
            headers.append('Content-Transfer-Encoding: %s' % (transfer_encoding,))
        headers.append('From: %s' % (self.format_from(info),))
        headers.append('To: %s' % (', '.join(to),))
        headers.append('Subject: %s' % (self.format_subject(info),))
        headers.append('Date: %s' % (formatdate(info.date, localtime=True),))
        if self.environment.sender:
            headers.append('Sender: %s' % (self.environment.sender,))
        return ''.join(
            '%s\n' % (header,)
            for header in headers
            if header.strip()
            )

    def make_mail(self, info, to):
        """Return the text of the email about info, addressed to the list to."""

        environment = self.environment
        max_size = environment.max_size

        multipart = False
        body_text = info.format_mail_body_text()
        body_html = None
        if environment.add_html:
            body_html = info.format_mail_body_html()
            multipart = max_size is None or len(body_text) + len(body_html) < max_size
        if not multipart:
            body_html = None
            body_text = truncate_body(body_text, max_size)

        if needs_base64(body_text) or needs_base64(body_html):
            transfer_encoding = 'base64'
            body_text = base64.encodebytes(body_text.encode('utf-8')).decode('ascii')
            if body_html is not None:
                body_html = base64.encodebytes(body_html.encode('utf-8')).decode('ascii')
        else:
            transfer_encoding = '8bit'

        if multipart:
            boundary = self.generate_boundary()
            body = MULTIPART_TEMPLATE % dict(
                boundary=boundary,
                transfer_encoding=transfer_encoding,
                body_text=body_text,
                body_html=body_html,
                )
        else:
            boundary = None
            body = body_text

        header = self.make_header(transfer_encoding, to, info, boundary)
        return header + '\n' + body

    def make_error_mail(self, old_revision, new_revision, reference, error):
        """Return the text of an email reporting that processing failed."""

        environment = self.environment
        body = ERROR_TEMPLATE % dict(
            oldrev=old_revision,
            newrev=new_revision,
            refname=reference,
            name=environment.repository_name,
            traceback=error,
            )
        sender = environment.sender or 'git-commit-mailer@%s' % (environment.fqdn,)
        headers = [
            'X-Mailer: %s' % (self.x_mailer(),),
            'MIME-Version: 1.0',
            'Content-Type: text/plain; charset=utf-8',
            'Content-Transfer-Encoding: 8bit',
            'From: %s' % (sender,),
            'To: %s' % (', '.join(environment.error_to),),
            'Subject: %s' % (header_encode(
                '%s: git-commit-mailer failed for %s' % (environment.repository_name, reference)
                ),),
            'Date: %s' % (formatdate(localtime=True),),
            ]
        return ''.join('%s\n' % (header,) for header in headers) + '\n' + body


class Mailer(object):
    """An object that can send emails."""

    def send(self, lines, to_addrs, envelope_sender=None):
        """Send an email consisting of lines.

        lines must be an iterable over the lines constituting the
        header and body of the email.  to_addrs is the list of
        envelope recipients; envelope_sender is used as the envelope
        sender unless the mailer has one of its own."""

        raise NotImplementedError()


class SMTPMailer(Mailer):
    """Send emails using Python's smtplib."""

    def __init__(self, server='localhost', port=smtplib.SMTP_PORT, envelope_sender=None):
        self.server = server
        self.port = port
        self.envelope_sender = envelope_sender

    def send(self, lines, to_addrs, envelope_sender=None):
        msg = ''.join(lines)
        to_addrs = [address for (name, address) in getaddresses(to_addrs) if address]
        sender = self.envelope_sender or envelope_sender
        try:
            smtp = smtplib.SMTP(self.server, self.port)
        except (socket.error, smtplib.SMTPException) as e:
            sys.stderr.write(
                '*** Error establishing SMTP connection to %s:%s ***\n'
                % (self.server, self.port)
                )
            sys.stderr.write('*** %s\n' % (e,))
            raise
        try:
            smtp.sendmail(sender, to_addrs, msg.encode('utf-8'))
        except smtplib.SMTPException as e:
            sys.stderr.write('*** Error sending email ***\n')
            sys.stderr.write('*** %s\n' % (e,))
            raise
        finally:
            smtp.quit()


class OutputMailer(Mailer):
    """Write emails to an output stream, bracketed by lines of '=' characters.

    This is intended for debugging purposes."""

    SEPARATOR = '=' * 75 + '\n'

    def __init__(self, f):
        self.f = f

    def send(self, lines, to_addrs, envelope_sender=None):
        self.f.write(self.SEPARATOR)
        self.f.writelines(lines)
        self.f.write(self.SEPARATOR)


class Push(object):
    """Process the reference changes of one push and send their emails.

    Every reference change is handled on its own: a fresh
    ReferenceChange classifies it and builds its Infos, MailBuilder
    turns them into mails and the mailer sends them.  Push mails are
    only sent if send_push_mail is set."""

    def __init__(self, environment, git, mailer):
        self.environment = environment
        self.git = git
        self.mailer = mailer

    def recipient_groups(self):
        if self.environment.send_per_to:
            return [[to] for to in self.environment.to]
        else:
            return [self.environment.to]

    def process_reference_change(self, old_revision, new_revision, reference):
        """Return (push_mails, commit_mails) for one reference change.

        Each mail is a tuple (envelope_sender, to, text)."""

        change = ReferenceChange(
            self.environment, self.git, old_revision, new_revision, reference,
            )
        if not change.make_infos():
            return ([], [])

        builder = MailBuilder(self.environment)

        def make_mails(info):
            sender = builder.from_address(info)
            return [
                (sender, to, builder.make_mail(info, to))
                for to in self.recipient_groups()
                ]

        push_mails = make_mails(change.push_info)
        commit_mails = []
        for commit_info in change.commit_infos:
            commit_mails.extend(make_mails(commit_info))
        return (push_mails, commit_mails)

    def send_mail(self, mail):
        (envelope_sender, to, text) = mail
        self.environment.log_debug('Sending notification email to: %s\n' % (', '.join(to),))
        self.mailer.send(text.splitlines(True), to, envelope_sender=envelope_sender)
        if self.environment.sleep_per_mail:
            time.sleep(self.environment.sleep_per_mail)

    def send_all_mails(self, push_mails, commit_mails):
        if self.environment.send_push_mail:
            for mail in push_mails:
                self.send_mail(mail)
        for mail in commit_mails:
            self.send_mail(mail)

    def send_error_mail(self, old_revision, new_revision, reference, error):
        environment = self.environment
        text = MailBuilder(environment).make_error_mail(
            old_revision, new_revision, reference, error,
            )
        environment.log_error(
            '*** Error while processing %s; reporting to %s\n'
            % (reference, ', '.join(environment.error_to))
            )
        self.mailer.send(
            text.splitlines(True), environment.error_to,
            envelope_sender=environment.sender or 'git-commit-mailer@%s' % (environment.fqdn,),
            )

    def run(self, old_revision, new_revision, reference):
        try:
            (push_mails, commit_mails) = self.process_reference_change(
                old_revision, new_revision, reference,
                )
            self.send_all_mails(push_mails, commit_mails)
        except Exception:
            if self.environment.error_to:
                self.send_error_mail(
                    old_revision, new_revision, reference, traceback.format_exc(),
                    )
            raise

    def origin_references(self):
        """Return {reference : object name} for the tags and origin's branches."""

        references = {}
        for reference in self.git.read_lines(
                ['rev-parse', '--symbolic-full-name', '--tags', '--remotes']
                ):
            if reference.startswith('refs/remotes/') \
                    and not reference.startswith('refs/remotes/origin/'):
                continue
            references[reference] = self.git.rev_parse(reference)
        return references

    def delete_tags(self):
        for tag in self.git.read_lines(['rev-parse', '--symbolic', '--tags']):
            self.git.read_output(['tag', '-d', tag])

    def fetch(self):
        """Fetch from origin; return the list of (old, new, reference) changes it made.

        Local tags are deleted first so that tags that were moved or
        removed on origin are noticed.  The changes are sorted by
        reference name."""

        old_references = self.origin_references()
        self.delete_tags()
        self.git.read_output(['fetch', '--force', '--tags'])
        self.git.read_output(['fetch', '--force'])
        new_references = self.origin_references()

        updated_references = []
        for reference in sorted(set(old_references) | set(new_references)):
            old_revision = old_references.get(reference, ZEROS)
            new_revision = new_references.get(reference, ZEROS)
            if old_revision != new_revision:
                updated_references.append((old_revision, new_revision, reference))
        return updated_references


def run_as_post_receive_hook(push, lines=None):
    if lines is None:
        lines = sys.stdin
    for line in lines:
        line = line.strip()
        if not line:
            continue
        (old_revision, new_revision, reference) = line.split(' ', 2)
        push.run(old_revision, new_revision, reference)


def run_as_update_hook(push, reference, old_revision, new_revision):
    def verify(revision):
        if is_null_revision(revision):
            return ZEROS
        return push.git.read_output(['rev-parse', '--verify', revision])

    push.run(verify(old_revision), verify(new_revision), reference)


def run_tracking_remote(push):
    for (old_revision, new_revision, reference) in push.fetch():
        push.run(old_revision, new_revision, reference)


def parse_date(date):
    """Parse an RFC 2822 date or a number of seconds since the epoch."""

    parsed = parsedate_tz(date)
    if parsed is not None:
        return mktime_tz(parsed)
    try:
        return float(date)
    except ValueError:
        raise ValueError('invalid date: %r' % (date,))


def make_option_parser():
    parser = optparse.OptionParser(
        description=__doc__,
        usage='%prog [OPTIONS] [REFNAME OLDREV NEWREV]',
        version='%prog ' + __version__,
        )

    group = optparse.OptionGroup(parser, 'Repository related options')
    group.add_option(
        '--repository', action='store', default=None, metavar='PATH',
        help='Use PATH as the target git repository.',
        )
    group.add_option(
        '--repository-browser', action='store', type='choice',
        choices=REPOSITORY_BROWSERS, default=None, metavar='SOFTWARE',
        help='Use SOFTWARE as the repository browser (%s).' % (', '.join(REPOSITORY_BROWSERS),),
        )
    group.add_option(
        '--github-base-url', action='store', default=None, metavar='URL',
        help='Use URL as base URL of GitHub (https://github.com).',
        )
    group.add_option(
        '--github-user', action='store', default=None, metavar='USER',
        help='Use USER as the GitHub user.',
        )
    group.add_option(
        '--github-repository', action='store', default=None, metavar='REPOSITORY',
        help='Use REPOSITORY as the GitHub repository.',
        )
    group.add_option(
        '--gitlab-project-uri', action='store', default=None, metavar='URI',
        help='Use URI as GitLab project URI.',
        )
    group.add_option(
        '--git-bin-path', action='store', default='git', metavar='GIT',
        help='Use GIT instead of the default "git" command.',
        )
    group.add_option(
        '--track-remote', action='store_true', default=False,
        help="Fetch new commits from the repository's origin and send mails.",
        )
    parser.add_option_group(group)

    group = optparse.OptionGroup(parser, 'E-mail related options')
    group.add_option(
        '-s', '--server', action='store', default=None,
        help='Use SERVER as SMTP server (localhost).',
        )
    group.add_option(
        '-p', '--port', action='store', type='int', default=None,
        help='Use PORT as SMTP port (%d).' % (smtplib.SMTP_PORT,),
        )
    group.add_option(
        '-t', '--to', action='append', default=[],
        help='Add TO to To: address.',
        )
    group.add_option(
        '--send-per-to', action='store_true', dest='send_per_to', default=None,
        help='Send a mail for each To: address.',
        )
    group.add_option(
        '--no-send-per-to', action='store_false', dest='send_per_to',
        )
    group.add_option(
        '-e', '--error-to', action='append', default=[],
        help='Add TO to To: address when an error occurs.',
        )
    group.add_option(
        '-f', '--from', action='store', dest='from_address', default=None,
        help='Use FROM as from address.',
        )
    group.add_option(
        '--from-domain', action='store', default=None, metavar='DOMAIN',
        help="Use the author's user name @DOMAIN as from address.",
        )
    group.add_option(
        '--sender', action='store', default=None,
        help='Use SENDER as a sender address.',
        )
    group.add_option(
        '--sleep-per-mail', action='store', type='float', default=None, metavar='SECONDS',
        help='Sleep SECONDS seconds after each email sent.',
        )
    group.add_option(
        '--stdout', action='store_true', default=False,
        help='Output emails to stdout rather than sending them.',
        )
    parser.add_option_group(group)

    group = optparse.OptionGroup(parser, 'Output related options')
    group.add_option(
        '--name', action='store', default=None,
        help='Use NAME as repository name.',
        )
    group.add_option(
        '--show-path', action='store_true', dest='show_path', default=None,
        help='Show the affected paths in the subject.',
        )
    group.add_option('--no-show-path', action='store_false', dest='show_path')
    group.add_option(
        '--send-push-mail', action='store_true', dest='send_push_mail', default=None,
        help='Send push mail.',
        )
    group.add_option('--no-send-push-mail', action='store_false', dest='send_push_mail')
    group.add_option(
        '-n', '--no-diff', action='store_false', dest='add_diff', default=None,
        help="Don't add diffs.",
        )
    group.add_option(
        '--add-html', action='store_true', dest='add_html', default=None,
        help='Add HTML as alternative content.',
        )
    group.add_option('--no-add-html', action='store_false', dest='add_html')
    group.add_option(
        '--max-size', action='store', default=None, metavar='SIZE',
        help='Limit mail body size to SIZE (G/GB/M/MB/K/KB/B units are available; %s).'
        % (DEFAULT_MAX_SIZE,),
        )
    group.add_option(
        '--no-limit-size', action='store_true', default=False,
        help="Don't limit mail body size.",
        )
    group.add_option(
        '--max-diff-size', action='store', default=None, metavar='SIZE',
        help='Limit diff size to SIZE (G/GB/M/MB/K/KB/B units are available; %s).'
        % (DEFAULT_MAX_SIZE,),
        )
    group.add_option(
        '--date', action='store', default=None,
        help='Use DATE (RFC 2822 or seconds since the epoch) as date of push mails.',
        )
    parser.add_option_group(group)

    parser.add_option(
        '--verbose', action='store_true', default=False,
        help='Be verbose.',
        )
    return parser


OPTION_SETTINGS = [
    'repository_browser', 'github_base_url', 'github_user', 'github_repository',
    'gitlab_project_uri', 'server', 'port', 'send_per_to', 'from_address',
    'from_domain', 'sender', 'sleep_per_mail', 'name', 'show_path',
    'send_push_mail', 'add_diff', 'add_html',
    ]


def apply_options(environment, options, parser):
    """Override the settings of environment with the options given."""

    for name in OPTION_SETTINGS:
        value = getattr(options, name)
        if value is not None:
            setattr(environment, name, value)
    if options.to:
        environment.to = options.to
    if options.error_to:
        environment.error_to = options.error_to
    if options.from_address and options.from_domain:
        parser.error('--from cannot coexist with --from-domain')
    elif options.from_address:
        environment.from_domain = None
    elif options.from_domain:
        environment.from_address = None
    for name in ['max_size', 'max_diff_size']:
        value = getattr(options, name)
        if value is not None:
            try:
                setattr(environment, name, parse_size(value))
            except ValueError:
                parser.error('invalid size for --%s: %r' % (name.replace('_', '-'), value))
    if options.no_limit_size:
        environment.max_size = None
    if options.date is not None:
        try:
            environment.date = parse_date(options.date)
        except ValueError as e:
            parser.error(str(e))
    environment.track_remote = options.track_remote
    environment.verbose = options.verbose


def main(args):
    global DEBUG

    parser = make_option_parser()
    (options, args) = parser.parse_args(args)

    if options.verbose:
        DEBUG = True

    git = Git(git_dir=options.repository, executable=options.git_bin_path)
    try:
        config = Config('commitmailer', git)
        environment = ConfigEnvironment(config, repository=options.repository)
        apply_options(environment, options, parser)
        environment.check()

        if options.stdout:
            mailer = OutputMailer(sys.stdout)
        else:
            mailer = SMTPMailer(
                environment.server, environment.port, environment.sender,
                )
        push = Push(environment, git, mailer)

        if environment.track_remote:
            if args:
                parser.error('--track-remote takes no arguments')
            run_tracking_remote(push)
        elif args:
            # Dual mode: if arguments were specified on the command
            # line, run like an update hook; otherwise, run as a
            # post-receive hook.
            if len(args) != 3:
                parser.error('Need zero or three arguments')
            (refname, oldrev, newrev) = args
            run_as_update_hook(push, refname, oldrev, newrev)
        else:
            run_as_post_receive_hook(push)
    except ConfigurationException as e:
        sys.exit(str(e))
    except CommandError as e:
        if options.verbose:
            raise
        sys.exit('fatal: %s' % (e,))


if __name__ == '__main__':
    main(sys.argv[1:])
