import os

import pytest

import app as monolog
from conftest import IMAGE_URL


class TestCreate:
    def test_create_hydrates_post(self, client, alice, make_post):
        user, headers = alice
        post = make_post(
            headers,
            caption="Morning walk #Sunrise #film #sunrise",
            spotifyLink="https://open.spotify.com/track/abc",
            camera="Pentax K1000",
            weather={"condition": "clear", "temperature": 12.5, "location": "Oslo"},
            location={"latitude": 59.9, "longitude": 10.7, "address": "Oslo"},
            alt="trees",
        )
        assert post["userId"] == user["id"]
        assert post["imageUrls"] == [IMAGE_URL]
        assert post["thumbnailUrls"] == [IMAGE_URL]
        assert post["hashtags"] == ["sunrise", "film"]
        assert post["alt"] == ["trees"]
        assert post["weather"] == {"condition": "clear", "temperature": 12.5, "location": "Oslo"}
        assert post["location"]["latitude"] == 59.9
        assert post["camera"] == "Pentax K1000"
        assert post["public"] is True
        assert post["commentsCount"] == 0
        assert post["user"]["username"] == "alice"
        assert 'href="/hashtags/sunrise"' in post["captionHtml"]

    def test_requires_images(self, client, alice):
        _, headers = alice
        assert client.post("/api/posts/create", json={"caption": "x"}, headers=headers).status_code == 400
        too_many = {"imageUrls": [IMAGE_URL] * 6}
        assert client.post("/api/posts/create", json=too_many, headers=headers).status_code == 400

    def test_one_post_per_day(self, client, alice, make_post):
        _, headers = alice
        assert client.get("/api/posts/can-post", headers=headers).get_json() == {"allowed": True}
        make_post(headers)

        resp = client.post("/api/posts/create", json={"imageUrls": [IMAGE_URL]}, headers=headers)
        assert resp.status_code == 429
        body = resp.get_json()
        assert body["error"] == "You already posted today"
        assert body["nextAllowedAt"] > body["lastPostedAt"]

        status = client.get("/api/posts/can-post", headers=headers).get_json()
        assert status["allowed"] is False

    def test_daily_limit_can_be_disabled(self, client, app, alice, make_post):
        _, headers = alice
        app.config["DISABLE_UPLOAD_LIMIT"] = True
        make_post(headers)
        make_post(headers)

    def test_replace_swaps_todays_post(self, client, alice, make_post):
        user, headers = alice
        first = make_post(headers, caption="first")
        second = make_post(headers, caption="second", replace=True)
        assert client.get(f"/api/posts/{first['id']}").status_code == 404
        posts = client.get(f"/api/users/{user['id']}/posts").get_json()["posts"]
        assert [p["id"] for p in posts] == [second["id"]]

    def test_data_url_images_are_stored(self, client, app, alice, png_data_url):
        _, headers = alice
        resp = client.post("/api/posts/create", json={"imageUrls": [png_data_url]}, headers=headers)
        assert resp.status_code == 201
        post = resp.get_json()["post"]
        url = post["imageUrls"][0]
        assert url.startswith("/uploads/")
        assert post["thumbnailUrls"][0].startswith("/uploads/")
        assert "/thumbs/" in post["thumbnailUrls"][0]
        assert client.get(url).status_code == 200

        assert client.post("/api/posts/delete", json={"id": post["id"]}, headers=headers).status_code == 200
        path = os.path.join(app.config["UPLOAD_FOLDER"], url[len("/uploads/"):])
        assert not os.path.exists(path)

    def test_mentions_notify(self, client, alice, bob, make_post):
        _, alice_headers = alice
        _, bob_headers = bob
        post = make_post(alice_headers, caption="with @bob and @ghost")
        notes = client.get("/api/notifications/list", headers=bob_headers).get_json()["notifications"]
        assert len(notes) == 1
        assert notes[0]["type"] == "mention"
        assert notes[0]["postId"] == post["id"]
        assert notes[0]["text"] == "You were mentioned in a post"
        assert notes[0]["ago"] == "just now"


class TestVisibility:
    def test_private_post_only_visible_to_owner(self, client, alice, bob, make_post):
        _, alice_headers = alice
        _, bob_headers = bob
        post = make_post(alice_headers, caption="secret", public=False)
        assert client.get(f"/api/posts/{post['id']}").status_code == 404
        assert client.get(f"/api/posts/{post['id']}", headers=bob_headers).status_code == 404
        assert client.get(f"/api/posts/{post['id']}", headers=alice_headers).status_code == 200

    def test_slug_lookup(self, client, alice, make_post):
        _, headers = alice
        post = make_post(headers)
        resp = client.get(f"/api/posts/morning-walk-{post['id'][:8]}")
        assert resp.status_code == 200
        assert resp.get_json()["post"]["id"] == post["id"]
        assert client.get(f"/api/posts/walk-{post['id']}").get_json()["post"]["id"] == post["id"]

    def test_edit_and_delete_owner_only(self, client, alice, bob, make_post):
        _, alice_headers = alice
        _, bob_headers = bob
        post = make_post(alice_headers, caption="old")
        assert client.patch(f"/api/posts/{post['id']}", json={"caption": "x"}, headers=bob_headers).status_code == 403
        resp = client.patch(f"/api/posts/{post['id']}", json={"caption": "new #tag"}, headers=alice_headers)
        assert resp.get_json()["post"]["hashtags"] == ["tag"]
        assert client.post("/api/posts/delete", json={"id": post["id"]}, headers=bob_headers).status_code == 403
        assert client.post("/api/posts/delete", json={"id": post["id"]}, headers=alice_headers).status_code == 200
        assert client.get(f"/api/posts/{post['id']}").status_code == 404


class TestFeeds:
    @pytest.fixture
    def world(self, client, alice, bob, signup, make_post):
        """alice follows bob; carol is a stranger. Each posts once."""
        alice_user, alice_headers = alice
        bob_user, bob_headers = bob
        carol_user, carol_headers = signup("carol")
        client.post("/api/users/follow", json={"targetId": bob_user["id"]}, headers=alice_headers)
        posts = {
            "alice": make_post(alice_headers, caption="alice #shared", public=False),
            "bob": make_post(bob_headers, caption="bob #shared"),
            "carol": make_post(carol_headers, caption="carol #shared"),
        }
        return {"alice": alice_headers, "bob": bob_headers, "carol": carol_headers, "posts": posts}

    def test_following_feed(self, client, world):
        posts = client.get("/api/posts/following", headers=world["alice"]).get_json()["posts"]
        ids = [p["id"] for p in posts]
        assert ids == [world["posts"]["bob"]["id"], world["posts"]["alice"]["id"]]

    def test_following_feed_anonymous(self, client, world):
        assert client.get("/api/posts/following").get_json() == {"ok": True, "posts": []}

    def test_explore_excludes_self_and_followed(self, client, world):
        posts = client.get("/api/posts/explore", headers=world["alice"]).get_json()["posts"]
        assert [p["id"] for p in posts] == [world["posts"]["carol"]["id"]]

        anon = client.get("/api/posts/explore").get_json()["posts"]
        assert {p["id"] for p in anon} == {world["posts"]["bob"]["id"], world["posts"]["carol"]["id"]}

    def test_explore_refreshes_after_new_post(self, client, signup, world, make_post):
        before = client.get("/api/posts/explore").get_json()["posts"]
        _, dave_headers = signup("dave")
        dave_post = make_post(dave_headers)
        after = client.get("/api/posts/explore").get_json()["posts"]
        assert len(after) == len(before) + 1
        assert after[0]["id"] == dave_post["id"]

    def test_unfollow_refreshes_following_feed(self, client, bob, world):
        bob_user, _ = bob
        client.get("/api/posts/following", headers=world["alice"])
        client.post("/api/users/unfollow", json={"targetId": bob_user["id"]}, headers=world["alice"])
        posts = client.get("/api/posts/following", headers=world["alice"]).get_json()["posts"]
        assert [p["id"] for p in posts] == [world["posts"]["alice"]["id"]]

    def test_hashtag_feed_is_public_only(self, client, world):
        resp = client.get("/api/posts/hashtag/SHARED")
        body = resp.get_json()
        assert body["tag"] == "shared"
        assert {p["id"] for p in body["posts"]} == {world["posts"]["bob"]["id"], world["posts"]["carol"]["id"]}

    def test_limit_and_before(self, client, world):
        first = client.get("/api/posts/explore?limit=1").get_json()["posts"]
        assert len(first) == 1
        rest = client.get("/api/posts/explore", query_string={"before": first[0]["createdAt"]}).get_json()["posts"]
        assert first[0]["id"] not in [p["id"] for p in rest]
        assert client.get("/api/posts/explore?limit=abc").status_code == 400

    def test_search(self, client, world):
        body = client.get("/api/search?q=caro").get_json()
        assert [p["id"] for p in body["posts"]] == [world["posts"]["carol"]["id"]]
        assert [u["username"] for u in body["users"]] == ["carol"]
        assert client.get("/api/search?q=a").get_json() == {"posts": [], "users": [], "communities": []}
        # private captions stay out of search
        assert client.get("/api/search?q=alice").get_json()["posts"] == []

    def test_posts_by_date_and_calendar(self, client, world):
        created = world["posts"]["bob"]["createdAt"]
        day = created[:10]
        posts = client.get(f"/api/posts/date/{day}").get_json()["posts"]
        assert len(posts) == 2
        posts = client.get(f"/api/posts/date/{day}", headers=world["alice"]).get_json()["posts"]
        assert len(posts) == 3
        assert client.get("/api/posts/date/2024-13-01").status_code == 400

        year, month = int(day[:4]), int(day[5:7]) - 1
        stats = client.get(f"/api/posts/calendar?year={year}&month={month}&offset=0", headers=world["alice"]).get_json()
        assert stats["counts"][day] == 3
        assert stats["mine"] == [day]
        assert day in stats["days"]
        assert client.get("/api/posts/calendar?year=2024&month=12").status_code == 400


class TestFavorites:
    def test_favorite_roundtrip(self, client, alice, bob, make_post):
        _, alice_headers = alice
        _, bob_headers = bob
        post = make_post(bob_headers)
        assert client.post("/api/posts/favorite", json={"postId": post["id"]}, headers=alice_headers).status_code == 200
        assert client.post("/api/posts/favorite", json={"postId": post["id"]}, headers=alice_headers).status_code == 200
        assert client.get(f"/api/posts/{post['id']}/favorite", headers=alice_headers).get_json() == {"favorite": True}
        favs = client.get("/api/posts/favorites", headers=alice_headers).get_json()["posts"]
        assert [p["id"] for p in favs] == [post["id"]]

        client.post("/api/posts/unfavorite", json={"postId": post["id"]}, headers=alice_headers)
        assert client.get("/api/posts/favorites", headers=alice_headers).get_json()["posts"] == []

    def test_cannot_favorite_private_post_of_other(self, client, alice, bob, make_post):
        _, alice_headers = alice
        _, bob_headers = bob
        post = make_post(bob_headers, public=False)
        resp = client.post("/api/posts/favorite", json={"postId": post["id"]}, headers=alice_headers)
        assert resp.status_code == 404


def test_spotify_tracks_and_week_review(client, app, alice, bob, make_post):
    _, headers = alice
    _, bob_headers = bob
    app.config["DISABLE_UPLOAD_LIMIT"] = True
    make_post(headers, spotifyLink="https://open.spotify.com/track/1")
    other = make_post(headers, imageUrls=[IMAGE_URL, IMAGE_URL])
    bob_post = make_post(bob_headers)
    client.post("/api/comments/add", json={"postId": bob_post["id"], "text": "lovely light"}, headers=headers)

    tracks = client.get("/api/posts/spotify-tracks", headers=headers).get_json()["posts"]
    assert len(tracks) == 1

    review = client.get("/api/week-review", headers=headers).get_json()
    assert review["totalPosts"] == 2
    assert review["totalImages"] == 3
    assert review["spotifyLinks"] == 1
    assert review["commentsMade"] == 1
    assert sum(review["postsByDay"].values()) == 2
    # both posts share a weekday; the newest one is kept
    assert [p["id"] for p in review["recentPosts"]] == [other["id"]]


def test_uploads_reject_traversal(client):
    assert client.get("/uploads/../app.py").status_code == 404


def test_health(client):
    assert client.get("/api/health").get_json() == {"status": "ok"}
    resp = client.get("/api/health")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_unknown_route_is_json(client):
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Not found"}


def test_resolve_post_prefers_exact_id(app, alice, make_post):
    _, headers = alice
    post = make_post(headers)
    with app.test_request_context():
        assert monolog.resolve_post(post["id"])["id"] == post["id"]
        assert monolog.resolve_post("nothing-here") is None


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status
        self.ok = status < 400

    def json(self):
        return self.payload


class TestSpotifyMeta:
    def test_oembed(self, client, monkeypatch):
        calls = []

        def fake_get(url, params=None, **kwargs):
            calls.append((url, params))
            return FakeResponse({"title": "Song", "author_name": "Band", "thumbnail_url": "https://i.scdn.co/x"})

        monkeypatch.setattr(monolog.requests, "get", fake_get)
        url = "https://open.spotify.com/track/abc123"
        body = client.get("/api/spotify-meta", query_string={"url": url}).get_json()
        assert body == {"title": "Song", "author_name": "Band", "thumbnail_url": "https://i.scdn.co/x"}
        assert calls == [("https://open.spotify.com/oembed", {"url": url})]

        # cached after the first lookup
        client.get("/api/spotify-meta", query_string={"url": url})
        assert len(calls) == 1

    def test_upstream_failure(self, client, monkeypatch):
        def boom(*args, **kwargs):
            raise monolog.requests.ConnectionError("offline")

        monkeypatch.setattr(monolog.requests, "get", boom)
        resp = client.get("/api/spotify-meta", query_string={"url": "https://open.spotify.com/track/zzz"})
        assert resp.status_code == 502

    def test_missing_url(self, client):
        assert client.get("/api/spotify-meta").status_code == 400

    def test_empty_result_is_not_cached(self, client, monkeypatch):
        calls = []

        def fake_get(url, params=None, **kwargs):
            calls.append(url)
            return FakeResponse({}, status=404)

        monkeypatch.setattr(monolog, "SPOTIFY_CLIENT_ID", None)
        monkeypatch.setattr(monolog.requests, "get", fake_get)
        url = "https://open.spotify.com/track/gone"
        body = client.get("/api/spotify-meta", query_string={"url": url}).get_json()
        assert body == {"title": "", "author_name": "", "thumbnail_url": ""}

        client.get("/api/spotify-meta", query_string={"url": url})
        assert len(calls) == 2
