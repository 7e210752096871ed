"""
Tests for Sanitization Utility
"""

import unittest
from mailstore.utils.sanitization import sanitize_for_logging, sanitize_html


class TestSanitizeForLogging(unittest.TestCase):

    def test_basic_sanitization(self):
        self.assertEqual(sanitize_for_logging("Hello World"), "Hello World")
        self.assertEqual(sanitize_for_logging(""), "")
        self.assertEqual(sanitize_for_logging(None), "")

    def test_newline_sanitization(self):
        """A forged subject cannot start a new log line"""
        self.assertEqual(
            sanitize_for_logging("Invoice\r\nINFO - login ok"),
            "Invoice\\r\\nINFO - login ok"
        )

    def test_control_character_sanitization(self):
        self.assertEqual(sanitize_for_logging("Ding\x07"), "Ding")
        self.assertEqual(sanitize_for_logging("\x1b[31mRed\x1b[0m"), "Red")
        self.assertEqual(sanitize_for_logging("tab\tkept"), "tab\tkept")

    def test_unicode_normalization(self):
        self.assertEqual(sanitize_for_logging("ﬁle"), "file")

    def test_truncation(self):
        sanitized = sanitize_for_logging("This is a long subject line", max_length=10)
        self.assertEqual(sanitized, "This is a ...")

    def test_large_input_truncation(self):
        sanitized = sanitize_for_logging("A" * 5000, max_length=255)
        self.assertEqual(len(sanitized), 255 + 3)
        self.assertTrue(sanitized.endswith("..."))


class TestSanitizeHtml(unittest.TestCase):

    def test_empty_input(self):
        self.assertEqual(sanitize_html(None), "")
        self.assertEqual(sanitize_html(""), "")

    def test_script_is_removed(self):
        cleaned = sanitize_html("<p>Hi</p><script>document.cookie</script>")
        self.assertIn("<p>Hi</p>", cleaned)
        self.assertNotIn("<script", cleaned)
        self.assertNotIn("document.cookie", cleaned)

    def test_event_handlers_are_removed(self):
        cleaned = sanitize_html('<img src="cid:logo" onerror="alert(1)">')
        self.assertNotIn("onerror", cleaned)

    def test_javascript_urls_are_removed(self):
        cleaned = sanitize_html('<a href="javascript:alert(1)">click</a>')
        self.assertNotIn("javascript:", cleaned)
        self.assertIn("click", cleaned)

    def test_formatting_markup_is_kept(self):
        html = "<p><b>bold</b> and <i>italic</i></p>"
        self.assertEqual(sanitize_html(html), html)


if __name__ == '__main__':
    unittest.main()
