from nlp.text import build_context_terms, derive_keywords, normalize_text, tokenize


def test_tokenize_splits_kanji_katakana_and_latin_runs():
    tokens = tokenize("前職ではプロジェクトマネージャーとしてPython開発を担当")
    assert tokens == ["前職", "プロジェクトマネージャー", "python", "開発", "担当"]


def test_tokenize_drops_short_numeric_and_stop_words():
    assert tokenize("I have 10 years of the work at 御社") == ["years", "work"]


def test_tokenize_normalizes_full_width():
    assert tokenize("ＡＷＳとＧＣＰ") == ["aws", "gcp"]


def test_normalize_text_ignores_punctuation_whitespace_and_case():
    assert normalize_text("自己紹介を お願いします。") == normalize_text("自己紹介をお願いします")
    assert normalize_text("Why Us?") == "whyus"


def test_derive_keywords_orders_by_frequency():
    text = "設計 開発 設計 運用 設計 開発"
    assert derive_keywords(text, limit=2) == ["設計", "開発"]


def test_build_context_terms_appends_extra_once():
    terms = build_context_terms(["クラウド 移行 クラウド"], ["株式会社サンプル", "クラウド", ""])
    assert terms.split(" ") == ["クラウド", "移行", "株式会社サンプル"]
