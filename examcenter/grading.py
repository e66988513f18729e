GRADE_BOUNDARIES = [
    (90, 'A+'),
    (80, 'A'),
    (70, 'B+'),
    (60, 'B'),
    (50, 'C'),
    (40, 'D'),
]


def get_grade(percentage):
    """Convert a percentage to a letter grade"""
    for boundary, grade in GRADE_BOUNDARIES:
        if percentage >= boundary:
            return grade
    return 'F'


def answer_value(answer):
    """Pick the answer payload's value: answerText wins over selectedOption.

    0 is a valid selectedOption, so only None counts as missing.
    """
    if not answer:
        return None
    if answer.get('answerText') is not None:
        return answer['answerText']
    if answer.get('selectedOption') is not None:
        return answer['selectedOption']
    return None


def is_blank(value):
    return value is None or (isinstance(value, str) and value.strip() == '')


def _selected_option_id(value, effective_options):
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        if 0 <= value < len(effective_options):
            return effective_options[value]['id']
        return None
    return str(value)


def grade_answer(question, options, effective_options, value, exam_negative_marking):
    """Return (is_correct, marks_obtained) for one answer.

    options carry is_correct; effective_options is the order the student was
    shown, which an integer selection indexes into.
    """
    if is_blank(value):
        return False, 0.0

    correct_option = next((o for o in options if o['is_correct']), None)
    if correct_option is not None:
        is_correct = _selected_option_id(value, effective_options) == correct_option['id']
    elif question.get('correct_answer') is not None:
        is_correct = str(value).strip().lower() == str(question['correct_answer']).strip().lower()
    else:
        # Nothing to compare against; left for manual evaluation
        return False, 0.0

    if is_correct:
        return True, float(question.get('marks') or 0)

    penalty = question.get('negative_marks')
    if penalty is None:
        penalty = exam_negative_marking or 0
    return False, -abs(float(penalty))


def summarize(graded, total_questions, total_marks, passing_percentage):
    """Aggregate graded answers ({question_id: (is_correct, marks)}) into result figures"""
    answered = len(graded)
    correct = sum(1 for is_correct, _ in graded.values() if is_correct)
    obtained = round(sum(marks for _, marks in graded.values()), 2)

    percentage = (obtained / total_marks * 100) if total_marks else 0.0
    percentage = round(min(100.0, max(0.0, percentage)), 2)

    return {
        'obtained_marks': obtained,
        'percentage': percentage,
        'grade': get_grade(percentage),
        'status': 'pass' if percentage >= (passing_percentage or 0) else 'fail',
        'correct_answers': correct,
        'incorrect_answers': answered - correct,
        'unanswered': max(0, total_questions - answered),
    }
