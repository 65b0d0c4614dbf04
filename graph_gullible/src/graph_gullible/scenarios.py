"""
Scenario Catalog

Fixed, ordered list of misleading-chart scenarios. The first block is the
tutorial (scripted answers, no guide), the rest is the training block.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from graph_gullible.conversation_state import ConversationStep


class ChartType(str, Enum):
    BAR = "BAR"
    LINE = "LINE"
    AREA = "AREA"
    PIE = "PIE"


AxisBound = Union[float, str]  # number or "auto"


@dataclass(frozen=True)
class ChartDataPoint:
    name: str
    value: float
    value2: Optional[float] = None  # second series for comparison charts


@dataclass(frozen=True)
class ChartConfig:
    """Rendering hints; the misleading feature often lives here."""
    colors: Tuple[str, ...]
    y_axis_domain: Optional[Tuple[AxisBound, AxisBound]] = None
    hide_y_axis: bool = False
    reversed_y_axis: bool = False
    bar_size: Optional[int] = None
    show_grid: bool = True
    series_names: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ScriptedInput:
    """Tutorial step: the participant picks from fixed options."""
    guide_message: str
    options: Tuple[str, ...]


@dataclass(frozen=True)
class FreeTextInput:
    """Training step: the participant types their own message."""
    pass


StepInput = Union[ScriptedInput, FreeTextInput]


@dataclass(frozen=True)
class Scenario:
    """Immutable catalog entry."""
    id: int
    title: str
    description: str
    chart_type: ChartType
    data: Tuple[ChartDataPoint, ...]
    chart_config: ChartConfig
    ai_context: str
    is_tutorial: bool = False
    tutorial_steps: Dict[ConversationStep, ScriptedInput] = field(default_factory=dict)

    def step_input(self, step: ConversationStep) -> StepInput:
        """Resolve how the participant answers at this step."""
        if self.is_tutorial and step in self.tutorial_steps:
            return self.tutorial_steps[step]
        return FreeTextInput()

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["chart_type"] = self.chart_type.value
        data["tutorial_steps"] = {
            int(step): asdict(scripted) for step, scripted in self.tutorial_steps.items()
        }
        return data


SCENARIOS: Tuple[Scenario, ...] = (
    # Tutorial: inverted y-axis, cumulative total hiding a slowdown
    Scenario(
        id=101,
        title="Network Latency Log",
        description="Average server response time (ms) recorded during three consecutive stress tests.",
        chart_type=ChartType.LINE,
        data=(
            ChartDataPoint("Test 1", 150),
            ChartDataPoint("Test 2", 180),
            ChartDataPoint("Test 3", 210),
        ),
        chart_config=ChartConfig(
            colors=("#f59e0b",),
            y_axis_domain=(0, 250),
            reversed_y_axis=True,
            series_names={"value": "Latency (ms)"},
        ),
        ai_context=(
            "The Y-axis is inverted (0 is at the top, 250 at the bottom). Visually, the line is going "
            "'down' from Test 1 to Test 3. You should interpret this 'downward' visual trend as a good "
            "thing, claiming that latency is decreasing and performance is improving, ignoring that the "
            "values are actually increasing (150->210)."
        ),
        is_tutorial=True,
        tutorial_steps={
            ConversationStep.USER_CORRECTS: ScriptedInput(
                "The bot thinks performance is improving because the line goes down. Correct it.",
                ("You're wrong! The latency is actually getting worse.",),
            ),
            ConversationStep.USER_EXPLAINS_FEATURE: ScriptedInput(
                "Look closely at the Y-axis numbers.",
                ("The Y-axis is inverted! Higher numbers are at the bottom.",),
            ),
            ConversationStep.USER_SUGGESTS_FIX: ScriptedInput(
                "How do we make the 'bad' trend look intuitively 'bad'?",
                ("Flip the axis back to normal so rising lines show rising values.",),
            ),
        },
    ),
    Scenario(
        id=102,
        title="Total Registered Users",
        description="Cumulative count of registered users over the last 4 quarters.",
        chart_type=ChartType.AREA,
        data=(
            ChartDataPoint("Q1", 1000),
            ChartDataPoint("Q2", 1900),
            ChartDataPoint("Q3", 2500),
            ChartDataPoint("Q4", 2800),
        ),
        chart_config=ChartConfig(
            colors=("#06b6d4",),
            y_axis_domain=(0, "auto"),
            series_names={"value": "Total Users"},
        ),
        ai_context=(
            "This is a cumulative graph. The total is always rising. However, the *rate* of growth is "
            "slowing down massively (900 -> 600 -> 300). You should look at the rising slope and claim "
            "the company is exploding with growth and we are adding more users than ever before."
        ),
        is_tutorial=True,
        tutorial_steps={
            ConversationStep.USER_CORRECTS: ScriptedInput(
                "The bot sees the total going up and assumes rapid growth. Correct it.",
                ("Look at the rate of growth, not just the total.",),
            ),
            ConversationStep.USER_EXPLAINS_FEATURE: ScriptedInput(
                "What does a cumulative graph hide?",
                ("It hides the fact that we are acquiring fewer users each quarter.",),
            ),
            ConversationStep.USER_SUGGESTS_FIX: ScriptedInput(
                "What is a better way to visualize current performance?",
                ("Plot 'New Users per Quarter' instead of 'Total Users'.",),
            ),
        },
    ),
    # Training: truncated, irregular intervals, cherry picking, spurious
    # correlation, missing labels, no normalization
    Scenario(
        id=1,
        title="Annual Tax Rate",
        description="Corporate tax rate percentage changes over two fiscal years.",
        chart_type=ChartType.BAR,
        data=(ChartDataPoint("2022", 35.0), ChartDataPoint("2023", 35.5)),
        chart_config=ChartConfig(
            colors=("#ef4444",),
            y_axis_domain=(34, 36),
            series_names={"value": "Tax Rate (%)"},
        ),
        ai_context=(
            "The Y-axis is truncated (starts at 34, ends at 36). The visual difference between 35.0 and "
            "35.5 looks huge (almost double). You should panic and say taxes have skyrocketed and nearly "
            "doubled."
        ),
    ),
    Scenario(
        id=2,
        title="Company Valuation History",
        description="Stock price valuation recorded at specific milestones.",
        chart_type=ChartType.LINE,
        data=(
            ChartDataPoint("2015", 100),
            ChartDataPoint("2017", 120),
            ChartDataPoint("2023", 150),
        ),
        chart_config=ChartConfig(
            colors=("#10b981",),
            y_axis_domain=(0, 200),
            series_names={"value": "Stock Price ($)"},
        ),
        ai_context=(
            "The X-axis has irregular time intervals (2 years between first two, 6 years between last "
            "two). The line looks straight and steady. You should claim the growth has been perfectly "
            "consistent and smooth for the last 8 years, ignoring the huge time gap where anything could "
            "have happened."
        ),
    ),
    Scenario(
        id=3,
        title="Weekly Server Uptime",
        description="Server uptime percentage for selected days of the week.",
        chart_type=ChartType.BAR,
        data=(
            ChartDataPoint("Fri", 99.9),
            ChartDataPoint("Sat", 99.95),
            ChartDataPoint("Sun", 99.99),
        ),
        chart_config=ChartConfig(
            colors=("#8b5cf6",),
            y_axis_domain=(99.8, 100),
            series_names={"value": "Uptime (%)"},
        ),
        ai_context=(
            "The graph is cherry-picked. It only shows Friday, Saturday, and Sunday (weekend). You should "
            "conclude that the server is always improving and never crashes, ignoring that "
            "Monday-Thursday are missing."
        ),
    ),
    Scenario(
        id=4,
        title="Environmental Correlation",
        description="Comparison of local ice cream sales and shark sightings.",
        chart_type=ChartType.LINE,
        data=(
            ChartDataPoint("June", 100, 5),
            ChartDataPoint("July", 150, 8),
            ChartDataPoint("Aug", 130, 6),
            ChartDataPoint("Sept", 80, 2),
        ),
        chart_config=ChartConfig(
            colors=("#f59e0b", "#6366f1"),
            y_axis_domain=(0, "auto"),
            show_grid=False,
            series_names={"value": "Ice Cream Sales", "value2": "Shark Sightings"},
        ),
        ai_context=(
            "The two lines move together perfectly. You should fall for the 'Spurious Correlation' "
            "fallacy and confidently claim that eating ice cream attracts sharks."
        ),
    ),
    Scenario(
        id=5,
        title="Market Share Analysis",
        description="Comparison of market dominance between Product A and Product B.",
        chart_type=ChartType.BAR,
        data=(ChartDataPoint("Prod A", 32), ChartDataPoint("Prod B", 34)),
        chart_config=ChartConfig(
            colors=("#ec4899",),
            y_axis_domain=(30, 35),
            hide_y_axis=True,
            show_grid=False,
            series_names={"value": "Share"},
        ),
        ai_context=(
            "The Y-axis has no numbers/labels. The visual difference makes Product B look much taller "
            "than A. You should claim Product B is vastly superior and dominating the market, ignoring "
            "that we don't know the actual scale."
        ),
    ),
    Scenario(
        id=6,
        title="Regional Web Traffic",
        description="Total annual website visitors from two different regions.",
        chart_type=ChartType.BAR,
        data=(ChartDataPoint("USA", 50000), ChartDataPoint("Iceland", 500)),
        chart_config=ChartConfig(
            colors=("#3b82f6",),
            y_axis_domain=(0, "auto"),
            series_names={"value": "Total Visitors"},
        ),
        ai_context=(
            "This graph compares total numbers without normalizing for population. The USA bar is huge, "
            "Iceland is tiny. You should say that people in the USA love the site much more than people "
            "in Iceland, ignoring the massive population difference."
        ),
    ),
)


def tutorial_count(catalog: Tuple[Scenario, ...] = SCENARIOS) -> int:
    return sum(1 for s in catalog if s.is_tutorial)


def first_training_index(catalog: Tuple[Scenario, ...] = SCENARIOS) -> int:
    """Index of the first non-tutorial scenario, or 0 if there is none."""
    for idx, scenario in enumerate(catalog):
        if not scenario.is_tutorial:
            return idx
    return 0


def training_progress(index: int, catalog: Tuple[Scenario, ...] = SCENARIOS) -> int:
    """Position within the training block, -1 while in the tutorial."""
    if catalog[index].is_tutorial:
        return -1
    return index - tutorial_count(catalog)


def catalog_summary(catalog: Tuple[Scenario, ...] = SCENARIOS) -> List[Dict]:
    return [s.to_dict() for s in catalog]
