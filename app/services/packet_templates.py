"""
Packet Templates
Default content populator: turns a client's intake answers into the
structured section payload stored on a packet and rendered to PDF.

Templates are small Jinja2 snippets keyed by packet type. Intake data that is
missing or malformed raises IntakeDataError; an unknown packet type or a
broken template raises TemplateNotFoundError / jinja2.TemplateError. None of
these are worth retrying.
"""
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from jinja2 import Environment, StrictUndefined

from app.models.packet import ClientRecord, PacketType, packet_type_display_name

logger = logging.getLogger(__name__)


class IntakeDataError(Exception):
    """Client intake data is missing or malformed"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class TemplateNotFoundError(Exception):
    """No template exists for the requested packet type"""
    pass


class ContentPopulator(ABC):
    """Produces the content payload for one packet."""

    @abstractmethod
    def populate(self, client: ClientRecord, packet_type: PacketType) -> Dict[str, Any]:
        ...


# Intake answers each packet type cannot be built without
REQUIRED_INTAKE_FIELDS: Dict[PacketType, List[str]] = {
    PacketType.INTRO: [],
    PacketType.NUTRITION: ["weight_lbs", "height_inches"],
    PacketType.WORKOUT: ["days_per_week"],
    PacketType.PERFORMANCE: ["sport"],
    PacketType.YOUTH: ["age"],
    PacketType.RECOVERY: ["injury_location"],
    PacketType.WELLNESS: [],
}

NUMERIC_INTAKE_FIELDS = {"weight_lbs", "height_inches", "days_per_week", "age", "session_duration"}

INTAKE_DEFAULTS: Dict[str, Any] = {
    "goal": "general fitness",
    "activity_level": "moderately active",
    "training_experience": "beginner",
    "days_per_week": 3,
    "session_duration": 60,
    "diet_type": "no restrictions",
    "food_allergies": "none",
    "injuries": "none reported",
    "available_equipment": "basic equipment",
    "motivation": "improve health",
    "biggest_struggle": "consistency",
}

EXPERIENCE_LEVELS = {
    "beginner": "New to training",
    "intermediate": "Some training experience",
    "advanced": "Experienced athlete",
    "expert": "Elite level",
}

ACTIVITY_MULTIPLIERS = {
    "sedentary": 1.2,
    "lightly active": 1.375,
    "moderately active": 1.55,
    "very active": 1.725,
    "extremely active": 1.9,
}

# Section key -> list of paragraph templates. Keys are camelCase so the PDF
# renderer can turn them into headings.
PACKET_TEMPLATES: Dict[PacketType, Dict[str, List[str]]] = {
    PacketType.INTRO: {
        "welcome": [
            "Welcome {{ client.full_name }}! We're excited to start working with you.",
            "Your coaching journey starts with your goal of {{ intake.goal }}.",
        ],
        "howCoachingWorks": [
            "Your coach reviews your intake answers and builds plans around your schedule of "
            "{{ intake.days_per_week }} days per week.",
            "Each plan in your dashboard is updated as you progress.",
        ],
        "nextSteps": [
            "Review each packet as it becomes ready.",
            "Reach out to your coach with questions at any time.",
        ],
    },
    PacketType.NUTRITION: {
        "nutritionOverview": [
            "This nutrition plan is designed for your goal of {{ intake.goal }}.",
            "Activity level: {{ intake.activity_level }}. Dietary preferences: {{ intake.diet_type }}.",
        ],
        "dailyTargets": [
            "Daily calorie target: {{ calculated.daily_calories }} calories.",
            "Protein: {{ calculated.protein_grams }} g. Carbohydrates: {{ calculated.carb_grams }} g. "
            "Fat: {{ calculated.fat_grams }} g.",
        ],
        "bodyComposition": [
            "Current BMI: {{ calculated.bmi }}.",
        ],
        "practicalTips": [
            "Eat protein with each meal and spread meals evenly through the day.",
            "Allergies and foods to avoid: {{ intake.food_allergies }}.",
        ],
    },
    PacketType.WORKOUT: {
        "programOverview": [
            "Training experience: {{ calculated.experience_level }}.",
            "Schedule: {{ intake.days_per_week }} sessions per week, {{ intake.session_duration }} minutes each.",
        ],
        "weeklySchedule": [
            "{% for day in calculated.training_days %}{{ day }}{% if not loop.last %}, {% endif %}{% endfor %}",
        ],
        "equipment": [
            "Planned around: {{ intake.available_equipment }}.",
        ],
        "safetyNotes": [
            "Injuries to work around: {{ intake.injuries }}.",
        ],
    },
    PacketType.PERFORMANCE: {
        "athleteProfile": [
            "Sport: {{ intake.sport }}{% if intake.position %}, position: {{ intake.position }}{% endif %}.",
            "Training experience: {{ calculated.experience_level }}.",
        ],
        "performanceFocus": [
            "Training is periodized around your {{ intake.sport }} season.",
        ],
    },
    PacketType.YOUTH: {
        "youthOverview": [
            "This plan is built for a {{ intake.age }}-year-old athlete and focuses on fundamentals.",
        ],
        "parentGuidance": [
            "Keep sessions fun and short, and prioritize sleep and recovery.",
        ],
    },
    PacketType.RECOVERY: {
        "recoveryOverview": [
            "This plan supports recovery for your {{ intake.injury_location }}.",
        ],
        "progressionGuidelines": [
            "Progress only when movements are pain free, and follow your medical provider's guidance.",
        ],
    },
    PacketType.WELLNESS: {
        "wellnessOverview": [
            "Your wellness plan supports your goal of {{ intake.goal }}.",
        ],
        "dailyHabits": [
            "Focus area: {{ intake.biggest_struggle }}. Motivation: {{ intake.motivation }}.",
        ],
    },
}

_WEEK_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def calculate_bmi(height_inches: Optional[float], weight_lbs: Optional[float]) -> Optional[float]:
    """BMI from imperial units, rounded to one decimal."""
    if not height_inches or not weight_lbs:
        return None
    return round((weight_lbs / (height_inches * height_inches)) * 703, 1)


class TemplateContentPopulator(ContentPopulator):
    """Fills PACKET_TEMPLATES from the client's intake answers."""

    def __init__(self, templates: Optional[Dict[PacketType, Dict[str, List[str]]]] = None):
        self.templates = templates or PACKET_TEMPLATES
        self.env = Environment(undefined=StrictUndefined, autoescape=False)

    def populate(self, client: ClientRecord, packet_type: PacketType) -> Dict[str, Any]:
        try:
            packet_type = PacketType(packet_type)
        except ValueError:
            raise TemplateNotFoundError(f"Template not found for packet type: {packet_type}")
        template = self.templates.get(packet_type)
        if not template:
            raise TemplateNotFoundError(f"Template not found for packet type: {packet_type.value}")

        intake = self._validated_intake(client, packet_type)
        context = {
            "client": {"id": client.id, "full_name": client.full_name, "client_type": client.client_type},
            "intake": intake,
            "calculated": self._calculated_values(intake),
        }

        sections: Dict[str, Any] = {}
        for section_key, paragraphs in template.items():
            sections[section_key] = [self.env.from_string(p).render(**context) for p in paragraphs]

        sections["metadata"] = {
            "packetType": packet_type.value,
            "title": f"{packet_type_display_name(packet_type)} Plan",
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "version": "1.0",
        }
        logger.debug(f"Populated {len(template)} sections for {packet_type.value} packet")
        return sections

    def _validated_intake(self, client: ClientRecord, packet_type: PacketType) -> Dict[str, Any]:
        if not client.full_name or not client.full_name.strip():
            raise IntakeDataError("Client is missing required field: full_name", field="full_name")

        responses = client.intake_responses
        if responses is None:
            responses = {}
        if not isinstance(responses, dict):
            raise IntakeDataError("Intake responses are malformed", field="intake_responses")

        intake = dict(INTAKE_DEFAULTS)
        intake.update({k: v for k, v in responses.items() if v not in (None, "")})

        for field in REQUIRED_INTAKE_FIELDS.get(packet_type, []):
            if intake.get(field) in (None, ""):
                raise IntakeDataError(
                    f"Intake data is missing required field '{field}' for {packet_type.value} packet",
                    field=field,
                )

        for field in NUMERIC_INTAKE_FIELDS:
            if field in intake:
                try:
                    value = float(intake[field])
                except (TypeError, ValueError):
                    raise IntakeDataError(f"Intake field '{field}' must be a number", field=field)
                if not math.isfinite(value):
                    raise IntakeDataError(f"Intake field '{field}' must be a number", field=field)
                if value <= 0:
                    raise IntakeDataError(f"Intake field '{field}' must be positive", field=field)
                intake[field] = int(value) if value.is_integer() else value

        days = intake["days_per_week"]
        if not isinstance(days, int) or not 1 <= days <= 7:
            raise IntakeDataError(
                "Intake field 'days_per_week' must be a whole number from 1 to 7", field="days_per_week"
            )

        for field in ("sport", "position", "age", "injury_location", "weight_lbs", "height_inches"):
            intake.setdefault(field, None)
        return intake

    def _calculated_values(self, intake: Dict[str, Any]) -> Dict[str, Any]:
        weight = intake.get("weight_lbs")
        height = intake.get("height_inches")
        calculated: Dict[str, Any] = {
            "bmi": calculate_bmi(height, weight),
            "experience_level": EXPERIENCE_LEVELS.get(
                str(intake.get("training_experience", "")).lower(), "Beginner"
            ),
        }

        days = intake["days_per_week"]
        step = 7 / days
        calculated["training_days"] = [_WEEK_DAYS[int(i * step)] for i in range(days)]

        if weight and height:
            # Mifflin-St Jeor without age/sex terms, scaled by activity
            weight_kg = weight * 0.4536
            height_cm = height * 2.54
            bmr = 10 * weight_kg + 6.25 * height_cm
            multiplier = ACTIVITY_MULTIPLIERS.get(str(intake.get("activity_level")).lower(), 1.55)
            daily_calories = int(round(bmr * multiplier / 10.0) * 10)
            protein = int(round(weight * 0.8))
            fat = int(round(daily_calories * 0.25 / 9))
            carbs = max(int(round((daily_calories - protein * 4 - fat * 9) / 4)), 0)
            calculated.update(
                daily_calories=daily_calories,
                protein_grams=protein,
                fat_grams=fat,
                carb_grams=carbs,
            )
        return calculated
