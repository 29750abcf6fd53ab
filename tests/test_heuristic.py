import pytest

from guide.heuristic import (
    PANEL_VETO,
    USED_VETO,
    action_for,
    heuristic_plan,
    rank_elements,
    tokenize,
)
from guide.models import ActionRecord, PageElement, Rect, SessionState


def _state(goal, history=(), step=1):
    return SessionState(goal=goal, active=True, step=step, history=list(history))


def test_tokenize_drops_stop_words_and_punctuation():
    assert tokenize("Apply for a Driver's License!") == ["apply", "driver", "license"]
    assert tokenize("I want to log in") == ["want", "log"]


def test_form_fill_prefers_empty_required_input(make_snapshot, make_element):
    snap = make_snapshot(
        make_element(0, "input", label="Email", locator="#email", value="ada@example.test", filled=True),
        make_element(1, "input", label="Full Name", locator="#full-name", required=True),
        make_element(2, "button", "Continue", locator="#continue"),
    )
    step = heuristic_plan(snap, _state("apply for driver's license"))

    assert step is not None
    assert step.action == "type"
    assert step.target_locator == "#full-name"
    assert "Full Name" in step.instruction
    assert step.step_number == 1


def test_active_panel_vetoes_outside_elements(make_snapshot, make_element):
    snap = make_snapshot(
        make_element(0, "button", "Send", locator="#send", in_panel=True),
        make_element(1, "button", "Submit", locator="#submit"),
        has_active_panel=True,
    )
    step = heuristic_plan(snap, _state("send the message"))
    assert step.target_locator == "#send"

    scores = {el.locator: score for score, el in rank_elements(snap, _state("send the message"))}
    assert scores["#submit"] == PANEL_VETO


def test_panel_veto_holds_even_when_only_outside_elements_match(make_snapshot, make_element):
    snap = make_snapshot(
        make_element(0, "button", "Close", locator="#close", in_panel=True),
        make_element(1, "button", "Submit application", locator="#submit"),
        has_active_panel=True,
    )
    step = heuristic_plan(snap, _state("submit application"))
    assert step is None or step.target_locator != "#submit"


def test_used_locators_are_excluded(make_snapshot, make_element):
    snap = make_snapshot(
        make_element(0, "button", "Book flight", locator="#book"),
        make_element(1, "button", "Search", locator="#search"),
    )
    history = [ActionRecord(step=1, action="click", target_locator="#book", text="Book flight")]
    state = _state("book a flight", history=history, step=2)

    step = heuristic_plan(snap, state)
    assert step.target_locator == "#search"
    assert step.step_number == 2

    scores = {el.locator: score for score, el in rank_elements(snap, state)}
    assert scores["#book"] == USED_VETO


def test_navigation_follows_goal_keywords(make_snapshot, make_element):
    snap = make_snapshot(
        make_element(0, "a", "Home", locator="#home"),
        make_element(1, "a", "Driver's License Services", locator="#dl"),
        make_element(2, "a", "Contact", locator="#contact"),
    )
    step = heuristic_plan(snap, _state("apply for driver's license"))
    assert step.target_locator == "#dl"
    assert step.action == "click"
    assert step.instruction == 'Click "Driver\'s License Services"'


def test_login_order_email_then_password_then_submit(make_snapshot, make_element):
    sign_in = make_element(0, "button", "Sign in", locator="#signin")
    email = make_element(1, "input", label="Email", input_type="email", locator="#email")
    password = make_element(2, "input", label="Password", input_type="password", locator="#password")
    goal = "log in to my account"

    step = heuristic_plan(make_snapshot(sign_in, email, password), _state(goal))
    assert step.target_locator == "#email"
    assert step.instruction == "Enter your email or username here"

    email_done = make_element(1, "input", label="Email", input_type="email", locator="#email",
                              value="ada@example.test", filled=True)
    history = [ActionRecord(1, "type", "#email", "")]
    step = heuristic_plan(make_snapshot(sign_in, email_done, password), _state(goal, history, 2))
    assert step.target_locator == "#password"
    assert step.instruction == "Enter your password here"

    password_done = make_element(2, "input", label="Password", input_type="password",
                                 locator="#password", value="secret", filled=True)
    history.append(ActionRecord(2, "type", "#password", ""))
    step = heuristic_plan(make_snapshot(sign_in, email_done, password_done), _state(goal, history, 3))
    assert step.target_locator == "#signin"
    assert step.action == "click"


def test_submit_ready_boosts_progress_button(make_snapshot, make_element):
    snap = make_snapshot(
        make_element(0, "input", label="Name", value="Ada", filled=True),
        make_element(1, "a", "Cancel", locator="#cancel"),
        make_element(2, "button", "Submit application", locator="#submit"),
    )
    step = heuristic_plan(snap, _state("apply for driver's license"))
    assert step.target_locator == "#submit"
    assert step.action == "click"


def test_penalty_words_push_elements_down(make_snapshot, make_element):
    snap = make_snapshot(
        make_element(0, "button", "Accept cookies", locator="#cookies"),
        make_element(1, "button", "Continue", locator="#continue"),
    )
    ranked = rank_elements(snap, _state("renew passport"))
    assert ranked[0][1].locator == "#continue"


def test_ties_keep_reading_order(make_snapshot, make_element):
    snap = make_snapshot(
        make_element(0, "button", "Next", locator="#first", rect=Rect(top=100, width=120, height=36)),
        make_element(1, "button", "Next", locator="#second", rect=Rect(top=100, width=120, height=36)),
    )
    assert heuristic_plan(snap, _state("go on")).target_locator == "#first"


def test_low_scores_fall_back_to_visible_clickable(make_snapshot, make_element):
    snap = make_snapshot(
        make_element(0, "a", "About us", locator="#about", rect=Rect(top=100, width=50, height=20)),
    )
    step = heuristic_plan(snap, _state("zzz"))
    assert step.target_locator == "#about"
    assert step.action == "click"


def test_returns_none_instead_of_guessing(make_snapshot, make_element):
    offscreen = make_snapshot(
        make_element(0, "a", "Blog", locator="#blog", in_viewport=False,
                     rect=Rect(top=2000, width=50, height=20)),
    )
    assert heuristic_plan(offscreen, _state("zzz")) is None

    dismissive = make_snapshot(make_element(0, "button", "Cancel", locator="#cancel"))
    assert heuristic_plan(dismissive, _state("zzz")) is None

    assert heuristic_plan(make_snapshot(), _state("anything")) is None


def test_plan_is_deterministic(make_snapshot, make_element):
    snap = make_snapshot(
        make_element(0, "a", "Flights", locator="#flights"),
        make_element(1, "a", "Hotels", locator="#hotels"),
        make_element(2, "input", label="Destination", locator="#dest"),
    )
    state = _state("book a hotel in Rome")
    first = heuristic_plan(snap, state)
    assert all(heuristic_plan(snap, state) == first for _ in range(5))


@pytest.mark.parametrize(
    "element,expected",
    [
        (PageElement(0, "input", "input", "", "Agree", "#a", is_input=True, input_type="checkbox"), "click"),
        (PageElement(0, "input", "input", "", "Plan", "#b", is_input=True, input_type="radio"), "click"),
        (PageElement(0, "input", "input", "", "CV", "#c", is_input=True, input_type="file"), "click"),
        (PageElement(0, "select", "select", "", "Country", "#d", is_input=True), "select"),
        (PageElement(0, "textarea", "textarea", "", "Notes", "#e", is_input=True), "type"),
        (PageElement(0, "input", "input", "", "Name", "#f", is_input=True), "type"),
        (PageElement(0, "a", "a", "Home", "", "#g"), "click"),
    ],
)
def test_action_for(element, expected):
    assert action_for(element) == expected
