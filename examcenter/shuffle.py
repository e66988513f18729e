"""
Deterministic shuffling for question and option order.

The order a student sees must be reproducible: the submit handler rebuilds
it to map a selected option index back to an option id, and a resumed
attempt must show the same order it showed before.
"""

_MASK = 0x7fffffff


def seeded_random(seed):
    """Linear congruential generator yielding floats in [0, 1]"""
    state = seed

    def next_value():
        nonlocal state
        state = (state * 1103515245 + 12345) & _MASK
        return state / _MASK

    return next_value


def shuffle_with_seed(items, seed):
    """Fisher-Yates shuffle of a copy of items, driven by the string seed"""
    shuffled = list(items)
    random = seeded_random(sum(ord(char) for char in seed))
    for i in range(len(shuffled) - 1, 0, -1):
        j = min(int(random() * (i + 1)), i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def shuffle_question_options(options, user_id, question_id, should_shuffle, attempt_id=None):
    if not should_shuffle or len(options) <= 1:
        return list(options)
    if attempt_id:
        seed = f'{user_id}-{question_id}-{attempt_id}'
    else:
        seed = f'{user_id}-{question_id}'
    return shuffle_with_seed(options, seed)


def order_questions(questions, user_id, exam_id, attempt_id, randomize):
    if not randomize or len(questions) <= 1:
        return list(questions)
    return shuffle_with_seed(questions, f'{user_id}-{exam_id}-{attempt_id}')
