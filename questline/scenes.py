"""Opening scenes, one per genre."""

from questline.models import Choice, Genre, Scene

FIRST_SCENE_ID = "scene-1"

_OPENINGS: dict[Genre, tuple[str, list[str]]] = {
    "Fantasy": (
        "In the ancient kingdom of Eldara, you find yourself standing before the towering "
        "gates of the Crystal Palace. The air shimmers with magical energy, and whispers of "
        "an impending doom echo through the streets.\n\n"
        "The Royal Guard captain approaches you with urgency in his eyes. \"Thank the gods "
        "you've arrived,\" he says. \"We need your help. The Sacred Crystal has been stolen, "
        "and without it, our realm will fall into chaos.\"\n\n"
        "Dark clouds gather overhead as you consider your next move.",
        [
            "Offer to help track down the crystal thief immediately",
            "Question the captain about recent suspicious activities in the palace",
            "Investigate the crystal's chamber for clues first",
        ],
    ),
    "Sci-Fi": (
        "Warning lights flash across the command console of your damaged starship. The "
        "emergency AI's voice crackles through the speakers: \"Hull breach detected. "
        "Multiple systems failing. Emergency protocols initiated.\"\n\n"
        "Through the viewport, you see the swirling anomaly that disabled your ship growing "
        "larger. The research station you were sent to investigate floats silently in the "
        "distance, its lights blinking in an odd pattern.\n\n"
        "Time is running out, and you must make a decision.",
        [
            "Attempt emergency repairs on the hull breach",
            "Try to dock with the research station",
            "Launch an emergency probe to study the anomaly",
        ],
    ),
    "Horror": (
        "The old mansion looms before you, its decrepit walls seeming to absorb what little "
        "moonlight filters through the clouds. The missing persons case that led you here "
        "suddenly feels much more sinister.\n\n"
        "A crash echoes from inside, followed by an unnatural silence. Your flashlight "
        "flickers, and for a moment, you swear you see movement in one of the upper "
        "windows.\n\n"
        "The wind carries what sounds like distant whispers.",
        [
            "Enter through the front door with caution",
            "Circle the mansion to find another way in",
            "Call for backup before proceeding",
        ],
    ),
    "Mystery": (
        "The detective's office is dimly lit, case files scattered across the desk. The "
        "photograph in your hand shows the victim, a prominent city councilor, found dead "
        "in mysterious circumstances.\n\n"
        "Your phone buzzes: an anonymous tip about a warehouse at the edge of town. At the "
        "same time, the victim's daughter is waiting in the lobby, claiming to have vital "
        "information.\n\n"
        "The clock strikes midnight.",
        [
            "Head to the warehouse immediately",
            "Interview the victim's daughter",
            "Review the case files more thoroughly",
        ],
    ),
}


def opening_scene(genre: Genre) -> Scene:
    """The first scene of a new adventure in ``genre``."""
    try:
        description, choices = _OPENINGS[genre]
    except KeyError:
        raise ValueError(f"Unknown genre: {genre!r}") from None
    return Scene(
        id=FIRST_SCENE_ID,
        description=description,
        choices=[Choice(id=i, text=t) for i, t in enumerate(choices, start=1)],
    )
