from conftest import SAMPLE_QUESTIONS, create_exam, start_attempt


def add_question(admin_client, **overrides):
    payload = {
        'question_text': 'Which gas do plants absorb?',
        'question_type': 'mcq',
        'marks': 3,
        'options': [
            {'option_text': 'Oxygen'},
            {'option_text': 'Carbon dioxide', 'is_correct': True},
            {'option_text': 'Helium'},
        ],
    }
    payload.update(overrides)
    response = admin_client.post('/api/admin/questions', json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()['questionId']


def test_bank_listing_and_search(admin_client):
    first = add_question(admin_client)
    second = add_question(admin_client, question_text='Name the red planet', question_type='short_answer',
                          options=[], correct_answer='Mars')

    body = admin_client.get('/api/admin/questions').get_json()
    assert body['pagination']['total'] == 2
    assert [q['id'] for q in body['questions']] == [second, first]
    listed = body['questions'][1]
    assert listed['in_bank'] is True
    assert listed['exam_count'] == 0
    assert [o['option_text'] for o in listed['options']] == ['Oxygen', 'Carbon dioxide', 'Helium']

    found = admin_client.get('/api/admin/questions', query_string={'search': 'planet'}).get_json()['questions']
    assert [q['id'] for q in found] == [second]
    by_type = admin_client.get('/api/admin/questions', query_string={'type': 'mcq'}).get_json()['questions']
    assert [q['id'] for q in by_type] == [first]
    assert admin_client.get('/api/admin/questions', query_string={'type': 'riddle'}).status_code == 400


def test_bank_question_is_validated(admin_client):
    response = admin_client.post('/api/admin/questions', json={'question_text': '  '})
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Question has no text'

    response = admin_client.post('/api/admin/questions', json={
        'question_text': 'Pick one', 'options': [{'option_text': 'A'}, {'option_text': 'B'}],
    })
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Question needs exactly one correct option'

    response = admin_client.post('/api/admin/questions', json={
        'question_text': 'Pick one', 'marks': 'many', 'question_type': 'short_answer',
    })
    assert response.status_code == 400
    assert admin_client.get('/api/admin/questions').get_json()['questions'] == []


def test_assign_bank_questions_to_exam(admin_client):
    exam = create_exam(admin_client, status='draft')
    first = add_question(admin_client)
    second = add_question(admin_client, question_text='Two plus two', question_type='short_answer',
                          options=[], correct_answer='4', marks=2)

    response = admin_client.post(f"/api/admin/exams/{exam['id']}/questions", json={'questionIds': [second, first]})
    assert response.status_code == 200
    body = response.get_json()
    assert body['totalQuestions'] == 2
    assert body['totalMarks'] == 5

    detail = admin_client.get(f"/api/exams/{exam['id']}").get_json()
    assert [q['id'] for q in detail['questions']] == [second, first]
    assert detail['exam']['total_marks'] == 5

    # the inline questions the exam had before are gone, bank ones stay
    bank = admin_client.get('/api/admin/questions').get_json()
    assert bank['pagination']['total'] == 2
    assert {q['id']: q['exam_count'] for q in bank['questions']} == {first: 1, second: 1}


def test_assign_rejects_bad_lists(admin_client):
    exam = create_exam(admin_client, status='draft')
    question_id = add_question(admin_client)
    url = f"/api/admin/exams/{exam['id']}/questions"

    assert admin_client.post(url, json={'questionIds': []}).status_code == 400
    assert admin_client.post(url, json={'questionIds': [question_id, question_id]}).status_code == 400
    assert admin_client.post(url, json={'questionIds': [{'id': question_id}]}).status_code == 400
    assert admin_client.post(url, json={'questionIds': [question_id, 'missing']}).status_code == 404
    assert admin_client.post('/api/admin/exams/missing/questions', json={'questionIds': [question_id]}).status_code == 404
    assert len(admin_client.get(f"/api/exams/{exam['id']}").get_json()['questions']) == len(SAMPLE_QUESTIONS)


def test_assign_can_keep_some_existing_questions(admin_client):
    exam = create_exam(admin_client, status='draft')
    kept = exam['questions'][3]['id']
    question_id = add_question(admin_client)

    response = admin_client.post(f"/api/admin/exams/{exam['id']}/questions", json={'questionIds': [kept, question_id]})
    assert response.status_code == 200
    detail = admin_client.get(f"/api/exams/{exam['id']}").get_json()
    assert [q['id'] for q in detail['questions']] == [kept, question_id]


def test_assign_refused_after_attempts(admin_client, student_client, exam):
    start_attempt(student_client, exam['id'])
    question_id = add_question(admin_client)
    response = admin_client.post(f"/api/admin/exams/{exam['id']}/questions", json={'questionIds': [question_id]})
    assert response.status_code == 409


def test_bank_questions_survive_exam_deletion(admin_client):
    exam = create_exam(admin_client, status='draft')
    question_id = add_question(admin_client)
    admin_client.post(f"/api/admin/exams/{exam['id']}/questions", json={'questionIds': [question_id]})

    assert admin_client.delete(f"/api/admin/questions/{question_id}").status_code == 409
    assert admin_client.delete(f"/api/admin/exams/{exam['id']}").status_code == 200

    bank = admin_client.get('/api/admin/questions').get_json()['questions']
    assert [q['id'] for q in bank] == [question_id]
    assert bank[0]['exam_count'] == 0

    assert admin_client.delete(f"/api/admin/questions/{question_id}").status_code == 200
    assert admin_client.delete(f"/api/admin/questions/{question_id}").status_code == 404


def test_bank_requires_admin(student_client):
    assert student_client.get('/api/admin/questions').status_code == 403
    assert student_client.post('/api/admin/questions', json={'question_text': 'x'}).status_code == 403
