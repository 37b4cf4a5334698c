import json
import pytest
from src.komokana import Config, Event

VK_SHIFT = 16
VK_CONTROL = 17
VK_MENU = 18


def make_config(tmp_path, rules) -> Config:
    path = tmp_path / "komokana.json"
    path.write_text(json.dumps(rules), encoding="utf-8")
    return Config(path)


def pressed(*codes):
    """Key probe reporting `codes` as held down, like GetKeyState's high bit."""
    return lambda code: -127 if code in codes else 0


BROAD_AND_SPECIFIC = [
    {"exe": "a.exe", "target_layer": "base"},
    {
        "exe": "a.exe",
        "target_layer": "num",
        "title_overrides": [{"title": "Calc", "strategy": "Equals", "target_layer": "calc"}],
    },
]


class TestDefaults:
    @pytest.mark.parametrize(
        "rules",
        [
            [],
            [{"exe": "b.exe", "target_layer": "other"}],
            BROAD_AND_SPECIFIC,
            [{"exe": "a.exe", "strategy": "StartsWith", "target_layer": "other"}],
        ],
    )
    def test_unmatched_focus_change_returns_default(self, tmp_path, rules):
        config = make_config(tmp_path, rules)
        assert config.resolve_layer(Event.FOCUS_CHANGE, "z.exe", "Calc", "default") == "default"

    @pytest.mark.parametrize("rules", [[], BROAD_AND_SPECIFIC])
    def test_unmatched_show_returns_none(self, tmp_path, rules):
        config = make_config(tmp_path, rules)
        assert config.resolve_layer(Event.SHOW, "z.exe", "Calc", None) is None

    def test_show_without_title_overrides_sends_nothing(self, tmp_path):
        config = make_config(tmp_path, [{"exe": "a.exe", "target_layer": "base"}])
        assert config.resolve_layer(Event.SHOW, "a.exe", "Anything", None) is None


class TestProcessMatching:
    def test_equals_is_the_default_strategy(self, tmp_path):
        config = make_config(tmp_path, [{"exe": "a.exe", "target_layer": "base"}])
        assert config.resolve_layer(Event.FOCUS_CHANGE, "a.exe", "", "d") == "base"
        assert config.resolve_layer(Event.FOCUS_CHANGE, "a.exe2", "", "d") == "d"

    def test_comparisons_are_case_sensitive(self, tmp_path):
        config = make_config(tmp_path, [{"exe": "a.exe", "target_layer": "base"}])
        assert config.resolve_layer(Event.FOCUS_CHANGE, "A.EXE", "", "d") == "d"

    @pytest.mark.parametrize(
        "strategy, exe, expected",
        [
            ("StartsWith", "Code - Insiders.exe", "editor"),
            ("StartsWith", "VSCode.exe", "d"),
            ("EndsWith", "VSCode", "editor"),
            ("Contains", "my-Code-fork.exe", "editor"),
            ("Contains", "code.exe", "d"),
        ],
    )
    def test_process_strategies(self, tmp_path, strategy, exe, expected):
        config = make_config(
            tmp_path, [{"exe": "Code", "strategy": strategy, "target_layer": "editor"}]
        )
        assert config.resolve_layer(Event.FOCUS_CHANGE, exe, "", "d") == expected


class TestTitleOverrides:
    RULES = [
        {
            "exe": "firefox.exe",
            "target_layer": "browser",
            "title_overrides": [
                {"title": "Slack", "strategy": "EndsWith", "target_layer": "chat"},
                {"title": "GitHub", "strategy": "Contains", "target_layer": "dev"},
            ],
        }
    ]

    def test_matching_override_wins(self, tmp_path):
        config = make_config(tmp_path, self.RULES)
        layer = config.resolve_layer(Event.FOCUS_CHANGE, "firefox.exe", "Team - Slack", "d")
        assert layer == "chat"

    def test_unmatched_title_falls_back_to_rule_layer(self, tmp_path):
        config = make_config(tmp_path, self.RULES)
        assert config.resolve_layer(Event.FOCUS_CHANGE, "firefox.exe", "News", "d") == "browser"

    def test_later_override_wins(self, tmp_path):
        config = make_config(tmp_path, self.RULES)
        title = "GitHub - Slack"
        assert config.resolve_layer(Event.FOCUS_CHANGE, "firefox.exe", title, "d") == "dev"

    def test_show_uses_override(self, tmp_path):
        config = make_config(tmp_path, self.RULES)
        assert config.resolve_layer(Event.SHOW, "firefox.exe", "GitHub", None) == "dev"

    def test_show_falls_back_to_rule_layer(self, tmp_path):
        config = make_config(tmp_path, self.RULES)
        assert config.resolve_layer(Event.SHOW, "firefox.exe", "News", None) == "browser"

    def test_missing_title_skips_overrides(self, tmp_path):
        config = make_config(tmp_path, self.RULES)
        assert config.resolve_layer(Event.FOCUS_CHANGE, "firefox.exe", None, "d") == "browser"
        assert config.resolve_layer(Event.SHOW, "firefox.exe", None, None) is None


class TestRuleComposition:
    def test_last_matching_rule_wins(self, tmp_path):
        config = make_config(
            tmp_path,
            [
                {"exe": "a.exe", "target_layer": "first"},
                {"exe": "b.exe", "target_layer": "unrelated"},
                {"exe": "a.exe", "target_layer": "second"},
            ],
        )
        assert config.resolve_layer(Event.FOCUS_CHANGE, "a.exe", "x", "d") == "second"

    @pytest.mark.parametrize("title, expected", [("Calc", "calc"), ("Other", "num")])
    def test_broad_and_specific_rules(self, tmp_path, title, expected):
        config = make_config(tmp_path, BROAD_AND_SPECIFIC)
        assert config.resolve_layer(Event.FOCUS_CHANGE, "a.exe", title, "base") == expected

    def test_show_keeps_layer_from_earlier_override(self, tmp_path):
        config = make_config(
            tmp_path,
            [
                {
                    "exe": "a.exe",
                    "target_layer": "base",
                    "title_overrides": [
                        {"title": "Calc", "strategy": "Equals", "target_layer": "calc"}
                    ],
                },
                {
                    "exe": "a.exe",
                    "target_layer": "num",
                    "title_overrides": [
                        {"title": "Notes", "strategy": "Equals", "target_layer": "notes"}
                    ],
                },
            ],
        )
        assert config.resolve_layer(Event.SHOW, "a.exe", "Calc", None) == "calc"


class TestVirtualKeys:
    RULES = [
        {
            "exe": "wt.exe",
            "target_layer": "terminal",
            "title_overrides": [{"title": "vim", "strategy": "Contains", "target_layer": "vim"}],
            "virtual_key_overrides": [
                {"virtual_key_code": VK_MENU, "targer_layer": "terminal_alt"},
                {"virtual_key_code": VK_CONTROL, "targer_layer": "terminal_ctrl"},
            ],
            "virtual_key_ignores": [VK_SHIFT],
        }
    ]

    def test_pressed_key_overrides_layer(self, tmp_path):
        config = make_config(tmp_path, self.RULES)
        layer = config.resolve_layer(Event.FOCUS_CHANGE, "wt.exe", "vim", "d", pressed(VK_MENU))
        assert layer == "terminal_alt"

    def test_later_key_override_wins(self, tmp_path):
        config = make_config(tmp_path, self.RULES)
        probe = pressed(VK_MENU, VK_CONTROL)
        assert config.resolve_layer(Event.FOCUS_CHANGE, "wt.exe", "", "d", probe) == "terminal_ctrl"

    def test_released_keys_leave_layer_alone(self, tmp_path):
        config = make_config(tmp_path, self.RULES)
        assert config.resolve_layer(Event.FOCUS_CHANGE, "wt.exe", "vim", "d", pressed()) == "vim"

    def test_ignored_key_suppresses_switch(self, tmp_path):
        config = make_config(tmp_path, self.RULES)
        probe = pressed(VK_SHIFT, VK_MENU)
        assert config.resolve_layer(Event.FOCUS_CHANGE, "wt.exe", "vim", "d", probe) is None

    def test_without_probe_keys_are_not_consulted(self, tmp_path):
        config = make_config(tmp_path, self.RULES)
        assert config.resolve_layer(Event.FOCUS_CHANGE, "wt.exe", "vim", "d", None) == "vim"

    def test_show_does_not_probe_keys(self, tmp_path):
        config = make_config(tmp_path, self.RULES)

        def probe(_code):
            raise AssertionError("Show events must not probe key state")

        assert config.resolve_layer(Event.SHOW, "wt.exe", "vim", None, probe) == "vim"

    def test_later_rule_can_reenable_switch(self, tmp_path):
        rules = self.RULES + [{"exe": "wt.exe", "target_layer": "late"}]
        config = make_config(tmp_path, rules)
        assert config.resolve_layer(Event.FOCUS_CHANGE, "wt.exe", "", "d", pressed(VK_SHIFT)) == "late"
