import caption_engine as engine


def char_measure(text):
    return len(text) * 10.0


def test_wrap_text_splits_encoded_newline_into_paragraphs():
    lines = engine.wrap_text("Listen%0Ason", 1000, char_measure)

    assert lines == ["Listen", "", "son", ""]


def test_wrap_text_splits_literal_newline():
    assert engine.wrap_text("Listen\nson", 1000, char_measure) == ["Listen", "", "son", ""]


def test_wrap_text_accepts_only_strictly_narrower_lines():
    # "ab cd" measures exactly 50
    assert engine.wrap_text("ab cd", 50, char_measure) == ["ab", "cd", ""]
    assert engine.wrap_text("ab cd", 51, char_measure) == ["ab cd", ""]


def test_wrap_text_keeps_overwide_word_on_its_own_line():
    lines = engine.wrap_text("a extraordinarily b", 40, char_measure)

    assert lines == ["a", "extraordinarily", "b", ""]


def test_wrap_text_empty_input_is_single_empty_line():
    assert engine.wrap_text("", 100, char_measure) == [""]


def test_wrap_text_greedy_fill():
    lines = engine.wrap_text("one two three four five", 100, char_measure)

    assert lines == ["one two", "three", "four five", ""]
    for line in lines:
        assert char_measure(line) < 100


def test_wrap_text_each_break_adds_gap_line():
    text = "a%0Ab%0Ac"

    lines = engine.wrap_text(text, 1000, char_measure)

    assert lines.count("") == 3
    assert [line for line in lines if line] == ["a", "b", "c"]


def test_wrap_text_without_trailing_gap():
    assert engine.wrap_text("a%0Ab", 1000, char_measure, trailing_gap=False) == ["a", "", "b"]


def test_wrap_text_empty_paragraph_between_breaks():
    assert engine.wrap_text("a%0A%0Ab", 1000, char_measure) == ["a", "", "", "", "b", ""]


def test_parse_font_style():
    assert engine.parse_font_style("bold") == (True, False)
    assert engine.parse_font_style("italic") == (False, True)
    assert engine.parse_font_style("bold italic") == (True, True)
    assert engine.parse_font_style("700") == (True, False)
    assert engine.parse_font_style("") == (False, False)


def test_font_candidates_include_fallback_families():
    names = engine.font_candidates("Arial", "bold")

    assert names[0] == "Arialbd.ttf"
    assert "DejaVuSans-Bold.ttf" in names


def test_load_font_falls_back_to_default(monkeypatch):
    engine.load_font.cache_clear()
    monkeypatch.setattr(engine, "font_candidates", lambda family, style: ["/nonexistent/font.ttf"])
    try:
        font = engine.load_font("Nope", 24, "normal")
        assert font.getlength("abc") > 0
    finally:
        engine.load_font.cache_clear()


def test_pillow_measurer_grows_with_text():
    engine.load_font.cache_clear()
    measure = engine.measurer_for("Arial", 30, "normal")

    assert measure("") == 0
    assert measure("wide text") > measure("w")


def test_load_font_clamps_oversized_request():
    engine.load_font.cache_clear()
    try:
        font = engine.load_font("Arial", 100000000, "normal")
        assert font.getlength("a") > 0
        measure = engine.measurer_for("Arial", 100000000, "bold")
        assert measure("abc") > 0
    finally:
        engine.load_font.cache_clear()
