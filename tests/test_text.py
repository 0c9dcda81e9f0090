from core.text import (
    deduplicate_sentences,
    estimate_token_count,
    extract_key_topics,
    split_into_chunks,
    split_sentences,
)


def test_estimate_token_count_rounds_up():
    assert estimate_token_count("") == 0
    assert estimate_token_count("abcd") == 1
    assert estimate_token_count("abcde") == 2
    assert estimate_token_count("x" * 2000) == 500


def test_split_sentences_handles_runs_of_terminators():
    assert split_sentences("Wait... what?! Yes") == ["Wait", "what", "Yes"]
    assert split_sentences("  . ! ?  ") == []


def test_deduplicate_drops_repeats_and_short_sentences():
    text = "Hello world again. Hello world again! Short. Another sentence here?"
    assert deduplicate_sentences(text) == "Hello world again. Another sentence here."


def test_deduplicate_is_case_sensitive_and_keeps_first_occurrence():
    text = "Second sentence here. First sentence here. second sentence here."
    assert deduplicate_sentences(text) == (
        "Second sentence here. First sentence here. second sentence here."
    )


def test_deduplicate_empty_and_all_short():
    assert deduplicate_sentences("") == ""
    assert deduplicate_sentences("Hi. Ok. Yes.") == ""


def test_deduplicated_output_only_contains_input_sentences():
    text = "Alpha beta gamma delta. Epsilon zeta eta theta! Alpha beta gamma delta? Tiny."
    out = split_sentences(deduplicate_sentences(text))
    assert len(out) == len(set(out))
    assert all(sentence in split_sentences(text) for sentence in out)


def test_chunks_reconstruct_every_sentence_in_order():
    sentences = [f"Sentence number {i} talks about topic {i * 7}" for i in range(40)]
    text = deduplicate_sentences(". ".join(sentences))

    chunks = split_into_chunks(text, 40)

    assert len(chunks) > 1
    rebuilt = [s for chunk in chunks for s in split_sentences(chunk)]
    assert rebuilt == split_sentences(text)


def test_chunks_respect_budget_except_single_oversized_sentence():
    long_sentence = "word " * 100
    text = f"Short opener sentence. {long_sentence}. Short closing sentence."

    chunks = split_into_chunks(text, 20)

    assert chunks[0] == "Short opener sentence."
    assert chunks[1] == long_sentence.strip() + "."
    assert chunks[2] == "Short closing sentence."
    for chunk in (chunks[0], chunks[2]):
        assert estimate_token_count(chunk) <= 20


def test_chunks_of_empty_text():
    assert split_into_chunks("", 100) == []


def test_extract_key_topics_skips_stopwords_and_short_words():
    text = "Pricing pricing pricing retention retention would would would the cat"
    assert extract_key_topics(text) == ["pricing", "retention"]
