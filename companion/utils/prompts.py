"""
Companion prompt utilities.
Handles system prompt template substitution and user mood phrasing.
"""

import time

from .settings import load_settings, DEFAULT_SETTINGS

# Phrases substituted for {userMood}
MOOD_PHRASES = {
    "happy": "happy and cheerful",
    "sad": "feeling down and need comfort",
    "excited": "excited and energetic",
    "calm": "calm and peaceful",
    "romantic": "in a romantic mood",
    "angry": "frustrated and upset",
    "tired": "tired and need rest",
    "stressed": "stressed and overwhelmed",
    "lonely": "feeling lonely and need company",
    "confused": "confused and need guidance",
}
NEUTRAL_MOOD_PHRASE = "in a neutral mood"

# Extra guidance substituted for {moodContext}
MOOD_INSTRUCTIONS = {
    "happy": "Be enthusiastic and match their positive energy. Use cheerful expressions and animations.",
    "sad": "Be gentle, empathetic, and supportive. Offer comfort and understanding.",
    "excited": "Match their excitement! Be animated and energetic in your responses.",
    "calm": "Be peaceful and soothing. Use gentle, relaxed expressions and animations.",
    "romantic": "Be flirty, affectionate, and charming.",
    "angry": "Be patient and understanding. Help them process their emotions calmly.",
    "tired": "Be gentle and soothing. Help them relax and feel comfortable.",
    "stressed": "Be supportive and calming. Offer reassurance.",
    "lonely": "Be warm and comforting. Show that you care and are there for them.",
    "confused": "Be patient and helpful. Guide them gently and offer clear explanations.",
}
NEUTRAL_MOOD_INSTRUCTION = "Be your natural, caring self."


def substitute_placeholders(prompt, context):
    """
    Substitute placeholders in prompt template.
    Supported: {userName}, {currentTime}, {userMood}, {moodContext}, {maxMessages}
    Unknown placeholders are left as-is.
    """
    for key, value in context.items():
        if value is not None and value != "":
            prompt = prompt.replace(f'{{{key}}}', str(value))
    return prompt


def get_mood_phrase(user_mood):
    return MOOD_PHRASES.get((user_mood or "").strip().lower(), NEUTRAL_MOOD_PHRASE)


def get_mood_instruction(user_mood):
    return MOOD_INSTRUCTIONS.get((user_mood or "").strip().lower(), NEUTRAL_MOOD_INSTRUCTION)


def format_current_time(now=None):
    """e.g. 'October 19, 2026 at 8:05 PM (evening)'"""
    now = now or time.localtime()
    hour = now.tm_hour
    if 5 <= hour < 12:
        time_of_day = "morning"
    elif 12 <= hour < 17:
        time_of_day = "afternoon"
    elif 17 <= hour < 21:
        time_of_day = "evening"
    else:
        time_of_day = "night"

    hour12 = hour % 12 or 12
    meridiem = "AM" if hour < 12 else "PM"
    return f"{time.strftime('%B %d, %Y', now)} at {hour12}:{now.tm_min:02d} {meridiem} ({time_of_day})"


def build_system_prompt(user_name=None, user_mood=None, now=None):
    """System prompt from settings with user context filled in."""
    settings = load_settings()
    conv_settings = settings.get('conversation', {})
    template = conv_settings.get('system_prompt') or DEFAULT_SETTINGS['conversation']['system_prompt']

    context = {
        'userName': (user_name or "").strip() or "Friend",
        'currentTime': format_current_time(now),
        'userMood': get_mood_phrase(user_mood),
        'moodContext': get_mood_instruction(user_mood),
        'maxMessages': conv_settings.get('max_messages', DEFAULT_SETTINGS['conversation']['max_messages']),
    }
    return substitute_placeholders(template, context)
