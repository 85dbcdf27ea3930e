import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from api_url import api_base, create_api_url


class TestApiUrl(unittest.TestCase):
    def test_api_suffix_added_once(self) -> None:
        self.assertEqual(api_base("http://localhost:3000"), "http://localhost:3000/api")
        self.assertEqual(api_base("http://localhost:3000/api/"), "http://localhost:3000/api")

    def test_create_api_url(self) -> None:
        self.assertEqual(create_api_url("posts", "http://h"), "http://h/api/posts")
        self.assertEqual(create_api_url("/posts", "http://h/api"), "http://h/api/posts")
        self.assertEqual(create_api_url("https://other/x", "http://h"), "https://other/x")

    def test_env_base(self) -> None:
        previous = os.environ.get("PORTAL_API_URL")
        os.environ["PORTAL_API_URL"] = "http://env.test"
        try:
            self.assertEqual(create_api_url("/tags"), "http://env.test/api/tags")
        finally:
            if previous is None:
                os.environ.pop("PORTAL_API_URL", None)
            else:
                os.environ["PORTAL_API_URL"] = previous


if __name__ == "__main__":
    unittest.main()
