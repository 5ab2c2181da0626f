"""
Unit tests for exclusion matching (burrow/backup/exclusion.py).
"""

import pytest

from burrow.backup.exclusion import is_excluded, match, normalize_path


class TestMatch:
    """Test single-pattern matching."""

    @pytest.mark.parametrize('pattern,path', [
        ('a/**', 'a'),
        ('a/**', 'a/b/c'),
        ('**/b', 'b'),
        ('**/b', 'x/y/b'),
        ('a/**/b', 'a/b'),
        ('a/**/b', 'a/x/y/b'),
        ('*.log', 'app.log'),
        ('data/?.db', 'data/1.db'),
        ('[abc].txt', 'b.txt'),
        ('[!abc].txt', 'd.txt'),
        ('**', 'anything/at/all'),
    ])
    def test_matches(self, pattern, path):
        assert match(pattern, path) is True

    @pytest.mark.parametrize('pattern,path', [
        ('*.log', 'logs/app.log'),
        ('a/*', 'a/b/c'),
        ('data/?.db', 'data/12.db'),
        ('[abc].txt', 'd.txt'),
        ('a/**/b', 'a/bb'),
        ('**/b', 'ab'),
    ])
    def test_does_not_match(self, pattern, path):
        """Test that single-segment wildcards never cross '/'."""
        assert match(pattern, path) is False

    def test_backslash_patterns(self):
        """Test that backslashes are treated as separators."""
        assert match('data\\*.db', 'data/app.db') is True

    def test_normalize_path(self):
        assert normalize_path('./a/b/') == 'a/b'
        assert normalize_path('a\\b') == 'a/b'


class TestIsExcluded:
    """Test exclusion with ancestor matching."""

    def test_excludes_nested_node_modules_and_git(self):
        """Test the typical exclusion set keeps sources."""
        patterns = ['**/node_modules/**', '**/.git/**']

        assert is_excluded('node_modules/pkg/index.js', patterns) is True
        assert is_excluded('.git/config', patterns) is True
        assert is_excluded('src/code.js', patterns) is False

    def test_ancestor_directory_match(self):
        """Test that a file under an excluded directory is excluded."""
        assert is_excluded('cache/deep/file.bin', ['cache']) is True
        assert is_excluded('data/cache/file.bin', ['*/cache']) is True

    def test_no_patterns(self):
        assert is_excluded('anything', []) is False
        assert is_excluded('anything', ['']) is False
