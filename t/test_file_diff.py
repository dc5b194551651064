import pytest

from git_commit_mailer import DiffLine
from git_commit_mailer import FileDiff
from git_commit_mailer import MalformedDiffHeader
from git_commit_mailer import UnsupportedDiffLine
from git_commit_mailer import unescape_file_path


MODIFIED_DIFF = """\
diff --git a/hello.txt b/hello.txt
index 1234567..89abcde 100644
--- a/hello.txt
+++ b/hello.txt
@@ -1,4 +1,5 @@ def greet():
 first
-second
+second!
+inserted
 third
 fourth
@@ -10,2 +11,2 @@
 tenth
-eleventh
+eleven
""".splitlines()


def parse_header(line):
    diff = FileDiff()
    diff.parse_header(line)
    return (diff.from_file, diff.to_file)


def parse_mode_change(line):
    diff = FileDiff()
    diff.parse_mode_change(line)
    return (diff.is_mode_changed, diff.old_mode, diff.new_mode)


def test_parse_header_no_space():
    assert parse_header('diff --git a/hello.txt b/hello.txt') == ('hello.txt', 'hello.txt')


def test_parse_header_have_space():
    assert parse_header('diff --git a/hello world.txt b/hello world.txt') == \
        ('hello world.txt', 'hello world.txt')


def test_parse_header_path_containing_b_prefix():
    assert parse_header('diff --git a/x b/y b/x b/y') == ('x b/y', 'x b/y')


def test_parse_header_quoted():
    line = r'diff --git "a/caf\303\251 menu.txt" "b/caf\303\251 menu.txt"'
    assert parse_header(line) == ('caf\xe9 menu.txt', 'caf\xe9 menu.txt')


def test_parse_header_rename():
    assert parse_header('diff --git a/old.txt b/new.txt') == ('old.txt', 'new.txt')


def test_parse_header_malformed():
    with pytest.raises(MalformedDiffHeader) as excinfo:
        parse_header('diff --git nonsense')
    assert excinfo.value.line == 'diff --git nonsense'


def test_unescape_file_path():
    assert unescape_file_path('plain.txt') == 'plain.txt'
    assert unescape_file_path(r'"tab\there"') == 'tab\there'
    assert unescape_file_path(r'"quote\"d\\"') == 'quote"d\\'
    assert unescape_file_path(r'"\346\227\245\346\234\254.txt"') == '日本.txt'


def test_parse_mode_change_one_parent():
    assert parse_mode_change('mode 100644,000000..100644') == (True, '000000', '100644')


def test_parse_mode_change_parents():
    assert parse_mode_change('mode 100644,000000,100755..100644') == \
        (True, '000000,100755', '100644')


def test_parse_old_and_new_mode():
    diff = FileDiff.parse([
        'diff --git a/run.sh b/run.sh',
        'old mode 100644',
        'new mode 100755',
        ])
    assert diff.is_mode_changed
    assert (diff.old_mode, diff.new_mode) == ('100644', '100755')
    assert diff.format_header().startswith(
        '  Modified: run.sh (+0 -0)\n'
        '  Mode: 100644 -> 100755\n'
        )


def test_parse_modified():
    diff = FileDiff.parse(MODIFIED_DIFF)
    assert diff.change_type == 'modified'
    assert (diff.from_file, diff.to_file) == ('hello.txt', 'hello.txt')
    assert (diff.old_blob, diff.new_blob) == ('1234567', '89abcde')
    assert diff.added_line_count == 3
    assert diff.deleted_line_count == 2


def test_line_numbers_advance_per_side():
    diff = FileDiff.parse(MODIFIED_DIFF)
    assert diff.lines == [
        DiffLine(DiffLine.HUNK_HEADER, 1, 1, '@@ -1,4 +1,5 @@ def greet():'),
        DiffLine(DiffLine.NOT_CHANGED, 1, 1, ' first'),
        DiffLine(DiffLine.DELETED, 2, None, '-second'),
        DiffLine(DiffLine.ADDED, None, 2, '+second!'),
        DiffLine(DiffLine.ADDED, None, 3, '+inserted'),
        DiffLine(DiffLine.NOT_CHANGED, 3, 4, ' third'),
        DiffLine(DiffLine.NOT_CHANGED, 4, 5, ' fourth'),
        DiffLine(DiffLine.HUNK_HEADER, 10, 11, '@@ -10,2 +11,2 @@'),
        DiffLine(DiffLine.NOT_CHANGED, 10, 11, ' tenth'),
        DiffLine(DiffLine.DELETED, 11, None, '-eleventh'),
        DiffLine(DiffLine.ADDED, None, 12, '+eleven'),
        ]


def test_counts_match_markers():
    diff = FileDiff.parse(MODIFIED_DIFF)
    body = MODIFIED_DIFF[4:]
    assert diff.added_line_count == len([l for l in body if l.startswith('+')])
    assert diff.deleted_line_count == len([l for l in body if l.startswith('-')])


def test_parse_added():
    diff = FileDiff.parse([
        'diff --git a/new.txt b/new.txt',
        'new file mode 100644',
        'index 0000000..e69de29',
        '--- /dev/null',
        '+++ b/new.txt',
        '@@ -0,0 +1 @@',
        '+hello',
        ])
    assert diff.change_type == 'added'
    assert diff.new_file_mode == '100644'
    assert diff.format_header() == (
        '  Added: new.txt (+1 -0) 100644\n'
        + FileDiff.SEPARATOR
        )
    assert diff.headers().startswith('--- /dev/null\n+++ new.txt    ')


def test_parse_deleted():
    diff = FileDiff.parse([
        'diff --git a/old.txt b/old.txt',
        'deleted file mode 100644',
        'index e69de29..0000000',
        '--- a/old.txt',
        '+++ /dev/null',
        '@@ -1 +0,0 @@',
        '-bye',
        ])
    assert diff.change_type == 'deleted'
    assert diff.headers().endswith('+++ /dev/null\n')


def test_parse_rename():
    diff = FileDiff.parse([
        'diff --git a/old name.txt b/new name.txt',
        'similarity index 100%',
        'rename from old name.txt',
        'rename to new name.txt',
        ])
    assert diff.change_type == 'renamed'
    assert diff.similarity_index == 100
    assert (diff.copy_or_rename_from, diff.copy_or_rename_to) == \
        ('old name.txt', 'new name.txt')
    assert diff.is_content_identical()
    assert diff.headers() == ''
    assert diff.format_header().startswith('  Renamed: new name.txt (+0 -0) 100%\n')


def test_parse_copy():
    diff = FileDiff.parse([
        'diff --git a/a.c b/b.c',
        'similarity index 90%',
        'copy from a.c',
        'copy to b.c',
        'index 1111111..2222222 100644',
        '--- a/a.c',
        '+++ b/b.c',
        '@@ -1 +1 @@',
        '-int a;',
        '+int b;',
        ])
    assert diff.change_type == 'copied'
    assert diff.similarity_index == 90
    assert not diff.is_content_identical()


def test_parse_binary():
    diff = FileDiff.parse([
        'diff --git a/logo.png b/logo.png',
        'new file mode 100644',
        'index 0000000..1234567',
        'Binary files /dev/null and b/logo.png differ',
        ])
    assert diff.is_binary
    assert diff.change_type == 'added'
    assert diff.headers() == '(Binary files differ)\n'


def test_unsupported_extended_header_is_fatal():
    with pytest.raises(UnsupportedDiffLine) as excinfo:
        FileDiff.parse([
            'diff --git a/x b/x',
            'frobnicated x',
            ])
    assert excinfo.value.line == 'frobnicated x'


def test_format_without_diff_shows_git_command():
    diff = FileDiff.parse(MODIFIED_DIFF)
    diff.set_revisions('a' * 40, None, 'b' * 40, None)
    assert diff.format(add_diff=False).endswith(
        '    % git diff aaaaaaa bbbbbbb -- hello.txt\n'
        )


def test_format_with_diff_keeps_lines_in_order():
    diff = FileDiff.parse(MODIFIED_DIFF)
    diff.set_revisions('a' * 40, 0, 'b' * 40, 0)
    formatted = diff.format()
    assert formatted.endswith('\n'.join(MODIFIED_DIFF[4:]) + '\n')
    assert '--- hello.txt    1970-01-01 00:00:00 +0000 (1234567)\n' in formatted
    assert '+++ hello.txt    1970-01-01 00:00:00 +0000 (89abcde)\n' in formatted
