"""Offline riddle bank used when the language model cannot provide a riddle."""

from __future__ import annotations

import random
from typing import Optional, Sequence

from utils.parsing import RiddlePair

RIDDLE_CATEGORIES = (
    "природа",
    "животные",
    "предметы быта",
    "логика",
    "математика",
    "география",
)

DIFFICULTY_LEVELS = ("easy", "medium", "hard")

STATIC_RIDDLES: tuple[RiddlePair, ...] = (
    RiddlePair("Зимой и летом одним цветом. Что это?", "Ёлка"),
    RiddlePair("Не лает, не кусает, а в дом не пускает. Что это?", "Замок"),
    RiddlePair("Висит груша, нельзя скушать. Что это?", "Лампочка"),
    RiddlePair("Сколько будет дважды два?", "4"),
    RiddlePair("Столица России?", "Москва"),
    RiddlePair("Что можно увидеть с закрытыми глазами?", "Сон"),
    RiddlePair("Без рук, без ног, а ворота открывает. Что это?", "Ветер"),
    RiddlePair("Сто одёжек и все без застёжек. Что это?", "Капуста"),
    RiddlePair("Что становится больше, если из него брать?", "Яма"),
    RiddlePair("Кто ходит сидя?", "Шахматист"),
    RiddlePair("Что принадлежит вам, но другие пользуются им чаще?", "Имя"),
    RiddlePair("Какая река самая длинная в Европе?", "Волга"),
)


def pick_static_riddle(
    *,
    exclude_question: Optional[str] = None,
    pool: Sequence[RiddlePair] = STATIC_RIDDLES,
    rng: Optional[random.Random] = None,
) -> RiddlePair:
    """Return a random riddle, avoiding ``exclude_question`` when possible."""

    if not pool:
        raise ValueError("Riddle pool is empty")
    chooser = rng or random
    candidates = [item for item in pool if item.question != exclude_question] or list(pool)
    return chooser.choice(candidates)
