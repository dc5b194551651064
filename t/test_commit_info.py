import pytest

from conftest import AUTHOR_DATE
from conftest import OTHER_PARENT
from conftest import PARENT
from conftest import PATCH
from conftest import REVISION
from conftest import commit_git

from git_commit_mailer import BINARY_LINE
from git_commit_mailer import CommitInfo
from git_commit_mailer import UnsupportedStatusLine
from git_commit_mailer import decode_diff_line


def test_records(environment):
    info = CommitInfo(environment, commit_git(), 'refs/heads/master', REVISION)
    assert info.author_name == 'Alice Author'
    assert info.author_email == 'alice@example.com'
    assert info.date == AUTHOR_DATE
    assert info.subject == 'Fix the greeting'
    assert info.summary == 'Fix the greeting\n\nThe greeting was wrong.'
    assert info.first_parent == PARENT
    assert not info.is_merge()
    assert info.short_reference == 'master'


def test_file_status(environment):
    info = CommitInfo(environment, commit_git(), 'refs/heads/master', REVISION)
    assert info.updated_files == ['README']
    assert info.added_files == ['src/main.c']
    assert info.renamed_files == [('old.txt', 'docs/new.txt')]
    assert info.copied_files == [('template.txt', 'docs/copy.txt')]
    assert info.deleted_files == ['gone.txt']
    assert info.type_changed_files == ['link']
    assert info.files == [
        'README', 'src/main.c', 'docs/new.txt', 'docs/copy.txt', 'gone.txt', 'link',
        ]
    assert info.file_index('docs/new.txt') == 2
    assert info.file_index('nowhere') is None


def test_unsupported_status_line(environment):
    with pytest.raises(UnsupportedStatusLine) as excinfo:
        CommitInfo(environment, commit_git(name_status='X\tweird\n'), 'refs/heads/master', REVISION)
    assert excinfo.value.line == 'X\tweird'


def test_diffs(environment):
    info = CommitInfo(environment, commit_git(), 'refs/heads/master', REVISION)
    assert [diff.file_path for diff in info.diffs] == ['README', 'src/main.c']
    (readme, main) = info.diffs
    assert readme.change_type == 'modified'
    assert (readme.added_line_count, readme.deleted_line_count) == (1, 1)
    assert main.change_type == 'added'
    assert main.added_line_count == 2
    assert (readme.old_revision, readme.new_revision) == (PARENT, REVISION)
    assert readme.old_date == AUTHOR_DATE - 60
    assert readme.new_date == AUTHOR_DATE
    assert not info.diff_truncated


def test_diff_truncated_mid_line(environment):
    # Cut inside the second file's header.
    environment.max_diff_size = PATCH.index(b'new file mode') + 5
    info = CommitInfo(environment, commit_git(), 'refs/heads/master', REVISION)
    assert info.diff_truncated
    assert [diff.file_path for diff in info.diffs] == ['README', 'src/main.c']
    assert info.diffs[0].added_line_count == 1
    assert info.diffs[1].lines == []
    assert '... diff truncated to' in info.format_mail_body_text()


def test_diff_truncated_notice_in_html(environment):
    environment.max_diff_size = PATCH.index(b'new file mode') + 5
    info = CommitInfo(environment, commit_git(), 'refs/heads/master', REVISION)
    html = info.format_mail_body_html()
    notice = '... diff truncated to %dB' % (environment.max_diff_size,)
    assert notice in html
    assert html.index(notice) > html.index('src/main.c')
    assert html.endswith('</p>\n  </body>\n</html>\n')


def test_complete_diff_has_no_truncation_notice(environment):
    info = CommitInfo(environment, commit_git(), 'refs/heads/master', REVISION)
    assert not info.diff_truncated
    assert 'diff truncated' not in info.format_mail_body_html()


def test_diff_truncated_before_first_file(environment):
    environment.max_diff_size = 10
    info = CommitInfo(environment, commit_git(), 'refs/heads/master', REVISION)
    assert info.diff_truncated
    assert info.diffs == []


def test_no_parent_date_without_diffs(environment):
    environment.add_diff = False
    git = commit_git()
    info = CommitInfo(environment, git, 'refs/heads/master', REVISION)
    assert info.diffs[0].old_date is None
    assert ('log', '-n', '1', '--pretty=format:%at%n', PARENT) not in git.commands


def test_root_commit(environment):
    info = CommitInfo(environment, commit_git(parents=()), 'refs/heads/master', REVISION)
    assert info.first_parent is None
    assert info.diffs[0].old_revision == '0' * 40


def test_decode_diff_line():
    assert decode_diff_line(b'+caf\xc3\xa9\n') == '+caf\xe9'
    assert decode_diff_line(b' dos line\r\n') == ' dos line'
    assert decode_diff_line(b'+\xff\xfe\n') == '+' + BINARY_LINE
    assert decode_diff_line(b'\xff\n') == BINARY_LINE


def test_headers_and_subject(environment):
    environment.show_path = True
    info = CommitInfo(environment, commit_git(), 'refs/heads/master', REVISION)
    assert info.message_id == '<%s@mail.example.com>' % (REVISION,)
    headers = info.headers()
    assert 'X-Git-Repository: project' in headers
    assert 'Message-ID: <%s@mail.example.com>' % (REVISION,) in headers
    assert not [h for h in headers if h.startswith('In-Reply-To')]
    assert info.format_mail_subject() == '[master (README,src)] Fix the greeting'


def test_merge_message_id(environment):
    info = CommitInfo(
        environment, commit_git(parents=(PARENT, OTHER_PARENT), patch=b''),
        'refs/heads/master', REVISION,
        )
    assert info.is_merge()
    assert info.other_parents == [OTHER_PARENT]
    assert info.message_id == '<merge.%s.%s@mail.example.com>' % (PARENT, REVISION)


def test_related_mail_headers(environment):
    merge = CommitInfo(
        environment, commit_git(parents=(PARENT, OTHER_PARENT), patch=b'', subject='Merge it'),
        'refs/heads/master', REVISION,
        )
    info = CommitInfo(environment, commit_git(), 'refs/heads/master', REVISION)
    assert info.add_merge(merge)
    assert not info.add_merge(merge)
    assert info.merge_messages == ['Merged 1111111: Merge it']
    assert info.related_mail_headers() == [
        'In-Reply-To: %s' % (merge.message_id,),
        'References: %s' % (merge.message_id,),
        ]
