import pytest

from moderation import check_comment, normalize_text


def test_normalize_text():
    assert normalize_text("Café  déjà-vu") == "cafe deja vu"
    assert normalize_text("5h!t") == "shit"
    assert normalize_text("  H3LL0...   W0RLD ") == "hello world"


def test_clean_comment_is_allowed():
    assert check_comment("Lovely light in this one") == ("allow", 0, [])


def test_empty_is_rejected():
    assert check_comment("   ") == ("reject", 100, ["empty"])
    assert check_comment("") == ("reject", 100, ["empty"])


@pytest.mark.parametrize("text", ["5h!t", "Shît", "what the fuck"])
def test_banned_words_reject(text):
    result = check_comment(text)
    assert result.action == "reject"
    assert result.reasons == ["banned_word"]
    assert result.score == 80


def test_banned_words_match_whole_words_only():
    assert check_comment("scrap metal in the title").action == "allow"


def test_link_spam_is_flagged():
    result = check_comment("see https://a.example.com and https://b.example.com")
    assert result.action == "flag"
    assert "multiple_links" in result.reasons


def test_long_url():
    result = check_comment("look https://example.com/" + "a" * 100)
    assert "long_url" in result.reasons


def test_repetition_heuristics():
    stretched = check_comment("soooooooo good")
    assert stretched.reasons == ["repeated_chars"]
    assert stretched.action == "flag"

    repeated = check_comment("spam spam spam spam spam spam")
    assert repeated.reasons == ["repetition"]
    assert repeated.score == 45


def test_short_shouting_is_only_scored():
    assert check_comment("WOW") == ("allow", 8, ["shouting"])
    assert check_comment("NO!!") == ("allow", 18, ["short_exclaim", "shouting"])
