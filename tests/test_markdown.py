from agentstream.markdown import escape_html, normalize_text, render_inline, render_markdown


def test_paragraph_lines_joined_with_breaks() -> None:
    assert render_markdown("one\ntwo\n\nthree") == "<p>one<br />two</p><p>three</p>"


def test_headings() -> None:
    html = render_markdown("# Title\n## Sub\n### Small\ntext")
    assert html == "<h1>Title</h1><h2>Sub</h2><h3>Small</h3><p>text</p>"


def test_indented_heading_terminates() -> None:
    assert render_markdown("intro\n  # Late heading") == "<p>intro</p><h1>Late heading</h1>"


def test_bullet_list() -> None:
    html = render_markdown("Items:\n- first\n* second\nafter")
    assert html == "<p>Items:</p><ul><li>first</li><li>second</li></ul><p>after</p>"


def test_fenced_code_block_with_language() -> None:
    html = render_markdown("before\n```python\nx = 1 < 2\n```\nafter")
    assert '<code class="md-code" data-lang="python">' in html
    assert "x = 1 &lt; 2" in html
    assert html.startswith("<p>before</p>")
    assert html.endswith("<p>after</p>")


def test_unclosed_fence_renders_as_code() -> None:
    """Partial streamed text with an open fence still renders the code."""
    html = render_markdown("see\n```\n**not bold**")
    assert "<strong>" not in html
    assert "**not bold**" in html
    assert '<pre class="md-pre">' in html


def test_html_is_escaped() -> None:
    assert render_markdown("<script>alert('x')</script>") == (
        "<p>&lt;script&gt;alert(&#39;x&#39;)&lt;/script&gt;</p>"
    )


def test_code_span_is_shielded_from_emphasis() -> None:
    assert render_inline("`a*b*c` and *d*") == "<code>a*b*c</code> and <em>d</em>"


def test_bold_before_italic() -> None:
    assert render_inline("**strong** and *soft*") == "<strong>strong</strong> and <em>soft</em>"


def test_link_label_and_url() -> None:
    html = render_inline("[docs](https://example.com/a_b_c)")
    assert html == '<a href="https://example.com/a_b_c" target="_blank" rel="noopener noreferrer">docs</a>'


def test_bare_url_drops_trailing_punctuation() -> None:
    html = render_inline("see https://example.com/x.")
    assert html == (
        'see <a href="https://example.com/x" target="_blank" rel="noopener noreferrer">'
        "https://example.com/x</a>."
    )


def test_url_with_asterisks_not_emphasized() -> None:
    html = render_inline("https://example.com/*a*")
    assert "<em>" not in html


def test_lookalike_punctuation_normalized() -> None:
    assert normalize_text("\u2217bold\uff0a \u2013 a\u00a0b\r\n") == "*bold* - a b\n"
    assert render_markdown("\u2217\u2217x\u2217\u2217") == "<p><strong>x</strong></p>"


def test_render_is_pure() -> None:
    text = "# T\n- a\n\n```js\nlet x\n```\n**b**"
    assert render_markdown(text) == render_markdown(text)


def test_escape_html() -> None:
    assert escape_html('a & "b"') == "a &amp; &quot;b&quot;"


def test_rendering_growing_text_converges() -> None:
    """Re-rendering every prefix of a stream ends at the full render."""
    final = "# Plan\n- one\n- two\n\n```py\nprint(1)\n```\nDone **now**"
    outputs = [render_markdown(final[:end]) for end in range(1, len(final) + 1)]
    assert outputs[-1] == render_markdown(final)
    assert outputs[-1].count("<h1>") == 1
    assert outputs[-1].count("<pre") == 1
