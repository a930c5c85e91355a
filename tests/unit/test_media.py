import asyncio

import pytest

from nautic.services import media


class TestClassify:
    def test_browser_formats_are_native(self):
        assert media.classify("/videos/Clip.MP4") == {
            "available": True,
            "native": True,
            "needsTranscode": False,
            "format": "MP4",
        }

    def test_container_formats_need_transcode(self):
        info = media.classify("/videos/show.mkv")
        assert info["available"] is True
        assert info["native"] is False
        assert info["needsTranscode"] is True

    def test_other_files_are_unavailable(self):
        assert media.classify("notes.txt")["available"] is False

    def test_no_file(self):
        assert media.classify(None) == {"available": False, "native": False, "needsTranscode": False}

    def test_mime_type_fallback(self):
        assert media.mime_type("a.webm") == "video/webm"
        assert media.mime_type("a.m4v") == "video/mp4"


class TestUrls:
    @pytest.mark.parametrize("url", [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ",
        "https://youtube.com/shorts/abc",
        "http://www.youtube.com/live/xyz",
    ])
    def test_youtube_urls(self, url):
        assert media.is_youtube_url(url)

    def test_other_urls(self):
        assert not media.is_youtube_url("https://vimeo.com/123")
        assert media.is_url("https://vimeo.com/123")
        assert not media.is_url("C:\\Videos\\a.mp4")

    def test_playlists(self):
        assert media.is_youtube_playlist("https://www.youtube.com/playlist?list=PL123")
        assert not media.is_youtube_playlist("https://example.com/?list=1")


class TestYoutubeLookup:
    def test_resolve_metadata(self, monkeypatch):
        def fake_extract(url, flat):
            assert flat is False
            return {
                "id": "abc",
                "title": "Song",
                "uploader": "Band",
                "duration": 200,
                "thumbnails": [{"url": "small.jpg"}, {"url": "large.jpg"}],
                "webpage_url": url,
            }

        monkeypatch.setattr(media, "_extract_info", fake_extract)

        info = asyncio.run(media.resolve_youtube("https://youtu.be/abc"))

        assert info == {
            "id": "abc",
            "url": "https://youtu.be/abc",
            "title": "Song",
            "thumbnail": "large.jpg",
            "channel": "Band",
            "duration": 200,
        }

    def test_resolve_failure(self, monkeypatch):
        monkeypatch.setattr(media, "_extract_info", lambda url, flat: None)
        assert asyncio.run(media.resolve_youtube("https://youtu.be/abc")) is None

    def test_playlist_entries(self, monkeypatch):
        monkeypatch.setattr(media, "_extract_info", lambda url, flat: {"entries": [
            {"id": "one", "title": "First", "url": "one"},
            None,
            {"id": "two", "title": "Second", "url": "https://www.youtube.com/watch?v=two"},
        ]})

        items = asyncio.run(media.extract_playlist("https://www.youtube.com/playlist?list=PL1"))

        assert [item["url"] for item in items] == [
            "https://www.youtube.com/watch?v=one",
            "https://www.youtube.com/watch?v=two",
        ]
        assert [item["index"] for item in items] == [0, 2]
