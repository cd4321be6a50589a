import pytest


@pytest.fixture
def community(client, alice):
    _, headers = alice
    resp = client.post(
        "/api/communities/create",
        json={"name": "Film Shooters", "description": "All things analog photography."},
        headers=headers,
    )
    assert resp.status_code == 201
    return resp.get_json()["community"]


class TestCommunities:
    def test_create(self, community, alice):
        user, _ = alice
        assert community["slug"] == "film-shooters"
        assert community["memberCount"] == 1
        assert community["threadCount"] == 0
        assert community["isMember"] is True
        assert community["creator"]["id"] == user["id"]

    def test_validation(self, client, alice, community):
        _, headers = alice
        short = client.post("/api/communities/create", json={"name": "ab", "description": "long enough text"}, headers=headers)
        assert short.status_code == 400
        vague = client.post("/api/communities/create", json={"name": "Valid name", "description": "short"}, headers=headers)
        assert vague.status_code == 400
        dup = client.post(
            "/api/communities/create",
            json={"name": "film shooters", "description": "Another analog community."},
            headers=headers,
        )
        assert dup.status_code == 409

    def test_join_and_leave(self, client, alice, bob, community):
        _, alice_headers = alice
        _, bob_headers = bob
        cid = community["id"]
        assert client.post("/api/communities/join", json={"communityId": cid}, headers=bob_headers).status_code == 200
        assert client.post("/api/communities/join", json={"communityId": cid}, headers=bob_headers).status_code == 409
        assert client.post("/api/communities/join", json={"communityId": "nope"}, headers=bob_headers).status_code == 404

        detail = client.get(f"/api/communities?id={cid}", headers=bob_headers).get_json()["community"]
        assert detail["memberCount"] == 2
        assert detail["isMember"] is True

        assert client.post("/api/communities/leave", json={"communityId": cid}, headers=alice_headers).status_code == 400
        assert client.post("/api/communities/leave", json={"communityId": cid}, headers=bob_headers).status_code == 200
        detail = client.get(f"/api/communities?id={cid}", headers=bob_headers).get_json()["community"]
        assert detail["isMember"] is False

    def test_list_and_slug(self, client, community):
        listed = client.get("/api/communities").get_json()["communities"]
        assert [c["id"] for c in listed] == [community["id"]]
        assert client.get("/api/communities/slug/film-shooters").get_json()["community"]["id"] == community["id"]
        assert client.get("/api/communities?id=nope").status_code == 404

    def test_update_and_delete_creator_only(self, client, alice, bob, community):
        _, alice_headers = alice
        _, bob_headers = bob
        cid = community["id"]
        assert client.patch(f"/api/communities/{cid}", json={"name": "Hijacked"}, headers=bob_headers).status_code == 403
        resp = client.patch(f"/api/communities/{cid}", json={"name": "Film Shooters Club"}, headers=alice_headers)
        assert resp.get_json()["community"]["slug"] == "film-shooters-club"

        assert client.delete(f"/api/communities?id={cid}", headers=bob_headers).status_code == 403
        assert client.delete(f"/api/communities?id={cid}", headers=alice_headers).status_code == 200
        assert client.get(f"/api/communities?id={cid}").status_code == 404

    def test_search_finds_communities(self, client, community):
        found = client.get("/api/search?q=analog").get_json()["communities"]
        assert [c["id"] for c in found] == [community["id"]]
        assert found[0]["memberCount"] == 1


class TestThreads:
    def test_create_thread_members_only(self, client, alice, bob, community):
        _, alice_headers = alice
        _, bob_headers = bob
        body = {"communityId": community["id"], "title": "Best film stock?", "content": "Portra or Ektar for portraits?"}
        assert client.post("/api/threads/create", json=body, headers=bob_headers).status_code == 403

        resp = client.post("/api/threads/create", json=body, headers=alice_headers)
        assert resp.status_code == 201
        thread = resp.get_json()["thread"]
        assert thread["slug"] == "best-film-stock"
        assert thread["replyCount"] == 0
        assert thread["community"]["slug"] == "film-shooters"

        listed = client.get(f"/api/threads?communityId={community['id']}").get_json()["threads"]
        assert [t["id"] for t in listed] == [thread["id"]]
        assert client.get(f"/api/communities?id={community['id']}").get_json()["community"]["threadCount"] == 1

    def test_thread_validation(self, client, alice, community):
        _, headers = alice
        short_title = {"communityId": community["id"], "title": "Hey", "content": "long enough content"}
        assert client.post("/api/threads/create", json=short_title, headers=headers).status_code == 400
        short_body = {"communityId": community["id"], "title": "Proper title", "content": "short"}
        assert client.post("/api/threads/create", json=short_body, headers=headers).status_code == 400
        assert client.get("/api/threads").status_code == 400

    def test_replies_and_new_activity(self, client, alice, bob, community):
        _, alice_headers = alice
        _, bob_headers = bob
        thread = client.post(
            "/api/threads/create",
            json={"communityId": community["id"], "title": "Darkroom tips", "content": "Share your darkroom tips here."},
            headers=alice_headers,
        ).get_json()["thread"]

        reply_body = {"threadId": thread["id"], "content": "Use fresh fixer."}
        assert client.post("/api/threads/replies", json=reply_body, headers=bob_headers).status_code == 403

        client.post("/api/communities/join", json={"communityId": community["id"]}, headers=bob_headers)
        since = client.get(f"/api/threads?id={thread['id']}").get_json()["thread"]["createdAt"]
        assert client.get("/api/threads/new", query_string={"since": since}, headers=alice_headers).get_json() == {
            "hasNewThreads": False
        }

        resp = client.post("/api/threads/replies", json=reply_body, headers=bob_headers)
        assert resp.status_code == 201
        reply = resp.get_json()["reply"]

        assert client.get("/api/threads/new", query_string={"since": since}, headers=alice_headers).get_json() == {
            "hasNewThreads": True
        }
        # bob's own reply is not news to bob
        assert client.get("/api/threads/new", query_string={"since": since}, headers=bob_headers).get_json() == {
            "hasNewThreads": False
        }
        assert client.get("/api/threads/new", headers=alice_headers).status_code == 400

        notes = client.get("/api/notifications/list", headers=alice_headers).get_json()["notifications"]
        assert [n["type"] for n in notes] == ["thread_reply"]

        replies = client.get(f"/api/threads/replies?threadId={thread['id']}").get_json()["replies"]
        assert [r["content"] for r in replies] == ["Use fresh fixer."]

        assert client.patch(f"/api/threads/replies/{reply['id']}", json={"content": "edit"}, headers=alice_headers).status_code == 403
        edited = client.patch(f"/api/threads/replies/{reply['id']}", json={"content": "Use fresh fixer!"}, headers=bob_headers)
        assert edited.get_json()["reply"]["content"] == "Use fresh fixer!"
        assert client.delete(f"/api/threads/replies/{reply['id']}", headers=bob_headers).status_code == 200

        assert client.delete(f"/api/threads/{thread['id']}", headers=bob_headers).status_code == 403
        assert client.delete(f"/api/threads/{thread['id']}", headers=alice_headers).status_code == 200
        assert client.get(f"/api/threads?id={thread['id']}").status_code == 404
