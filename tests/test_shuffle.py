from examcenter.shuffle import (
    order_questions, seeded_random, shuffle_question_options, shuffle_with_seed,
)

OPTIONS = [{'id': f'opt-{i}'} for i in range(5)]


def test_seeded_random_is_deterministic_and_in_range():
    first = seeded_random(1234)
    second = seeded_random(1234)
    values = [first() for _ in range(50)]
    assert values == [second() for _ in range(50)]
    assert all(0 <= v <= 1 for v in values)


def test_seeded_random_first_value():
    # (42 * 1103515245 + 12345) & 0x7fffffff
    expected = ((42 * 1103515245 + 12345) & 0x7fffffff) / 0x7fffffff
    assert seeded_random(42)() == expected


def test_shuffle_is_a_permutation_and_does_not_mutate():
    items = list(range(10))
    shuffled = shuffle_with_seed(items, 'abc')
    assert sorted(shuffled) == items
    assert items == list(range(10))


def test_same_seed_same_order():
    assert shuffle_with_seed(OPTIONS, 'u1-q1-a1') == shuffle_with_seed(OPTIONS, 'u1-q1-a1')


def test_seed_is_sum_of_code_points():
    # anagrams share a character sum and therefore an order
    assert shuffle_with_seed(OPTIONS, 'ab') == shuffle_with_seed(OPTIONS, 'ba')


def test_shuffle_disabled_or_single_option_keeps_order():
    assert shuffle_question_options(OPTIONS, 'u1', 'q1', False, 'a1') == OPTIONS
    assert shuffle_question_options(OPTIONS[:1], 'u1', 'q1', True, 'a1') == OPTIONS[:1]


def test_option_seed_includes_attempt_when_given():
    with_attempt = shuffle_question_options(OPTIONS, 'u1', 'q1', True, 'a1')
    assert with_attempt == shuffle_with_seed(OPTIONS, 'u1-q1-a1')
    without_attempt = shuffle_question_options(OPTIONS, 'u1', 'q1', True)
    assert without_attempt == shuffle_with_seed(OPTIONS, 'u1-q1')


def test_order_questions_only_when_randomized():
    questions = [{'id': f'q{i}'} for i in range(6)]
    assert order_questions(questions, 'u1', 'e1', 'a1', False) == questions
    ordered = order_questions(questions, 'u1', 'e1', 'a1', True)
    assert ordered == shuffle_with_seed(questions, 'u1-e1-a1')
    assert sorted(q['id'] for q in ordered) == [q['id'] for q in questions]
