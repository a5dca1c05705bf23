from supportline.config import DEFAULT_ESCALATION_KEYWORDS
from supportline.nlp import NEUTRAL_SENTIMENT, NlpPipeline


def test_sentiment_is_bounded_polarity():
    nlp = NlpPipeline()

    assert nlp.sentiment_score("When does my order ship?") == NEUTRAL_SENTIMENT
    assert nlp.sentiment_score("Thanks, great help") == 0.9
    assert nlp.sentiment_score("This is terrible and unacceptable") == 0.1
    assert nlp.sentiment_score("awful terrible useless worst hate") == 0.0


def test_analyse_labels_sentiment_and_topics():
    result = NlpPipeline().analyse("I was charged twice, this is ridiculous")

    assert result["sentiment"] == {"label": "negative", "score": 0.3}
    assert result["topics"] == ["billing"]


def test_topics_default_to_general():
    assert NlpPipeline().extract_topics("hello there") == ["general"]
    assert NlpPipeline().extract_topics("I cannot log in after the outage") == [
        "access",
        "technical",
    ]


def test_keyword_match_is_whole_word_and_ordered():
    nlp = NlpPipeline()

    assert nlp.match_keywords("There is an issue with my invoice", DEFAULT_ESCALATION_KEYWORDS) is None
    match = nlp.match_keywords("My ATTORNEY wants a refund", DEFAULT_ESCALATION_KEYWORDS)
    assert (match.category, match.keyword) == ("legal_language", "attorney")


def test_language_of_empty_text_is_unknown():
    assert NlpPipeline().analyse("   ")["language"] is None
