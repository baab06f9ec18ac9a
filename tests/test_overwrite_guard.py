import io

from mtzst import may_write


def test_force_always_allows(tmp_path):
    p = tmp_path / "out.zst"
    p.write_bytes(b"old")
    assert may_write(str(p), True, io.StringIO(""), io.StringIO())


def test_missing_target_allowed_without_prompt(tmp_path):
    out = io.StringIO()
    assert may_write(str(tmp_path / "nope"), False, io.StringIO(""), out)
    assert out.getvalue() == ""


def test_ambiguous_answer_reprompts(tmp_path):
    p = tmp_path / "out.zst"
    p.write_bytes(b"old")
    out = io.StringIO()
    assert may_write(str(p), False, io.StringIO("maybe\n\nY\n"), out)
    assert out.getvalue().count("overwrite (y/n)?") == 3


def test_decline_consumes_only_one_line(tmp_path):
    p = tmp_path / "out.zst"
    p.write_bytes(b"old")
    answers = io.StringIO("n   \nyes\n")
    assert not may_write(str(p), False, answers, io.StringIO())
    assert answers.readline() == "yes\n"


def test_long_answers_accepted(tmp_path):
    p = tmp_path / "out.zst"
    p.write_bytes(b"old")
    assert may_write(str(p), False, io.StringIO("YES\n"), io.StringIO())
    assert not may_write(str(p), False, io.StringIO("No\n"), io.StringIO())


def test_eof_means_no(tmp_path):
    p = tmp_path / "out.zst"
    p.write_bytes(b"old")
    assert not may_write(str(p), False, io.StringIO("what\n"), io.StringIO())


def test_unopenable_target_refused(tmp_path):
    d = tmp_path / "adir"
    d.mkdir()
    out = io.StringIO()
    assert not may_write(str(d), False, io.StringIO("y\n"), out)
    assert out.getvalue() == ""


def test_no_prompt_stream_refuses_existing(tmp_path):
    p = tmp_path / "out.zst"
    p.write_bytes(b"old")
    assert not may_write(str(p), False, None, io.StringIO())
