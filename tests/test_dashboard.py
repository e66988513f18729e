from conftest import correct_option_id, start_attempt


def answer_everything(exam):
    answers = {}
    for question in exam['questions']:
        if question['options']:
            answers[question['id']] = {'selectedOption': correct_option_id(question)}
        else:
            answers[question['id']] = {'answerText': 'jupiter'}
    return answers


def test_dashboard_stats(student_client, admin_client, exam):
    attempt_id = start_attempt(student_client, exam['id'])['attemptId']
    student_client.post('/api/exam-attempts/anti-cheat', json={
        'attemptId': attempt_id, 'eventType': 'tab_hidden', 'severity': 'critical',
    })
    student_client.post('/api/exam-attempts/submit', json={'attemptId': attempt_id, 'answers': answer_everything(exam)})

    body = admin_client.get('/api/admin/dashboard').get_json()
    stats = body['stats']
    assert stats['usersByRole'] == {'admin': 1, 'proctor': 0, 'student': 1}
    assert stats['totalUsers'] == 2
    assert stats['totalExams'] == 1
    assert stats['publishedExams'] == 1
    assert stats['totalQuestions'] == 4
    assert stats['totalAttempts'] == 1
    assert stats['ongoingAttempts'] == 0
    assert stats['averagePercentage'] == 100
    assert stats['passRate'] == 100
    assert stats['totalRevenue'] == 0

    recent = body['recentResults']
    assert len(recent) == 1
    assert recent[0]['student_name'] == 'Sam Student'
    assert recent[0]['status'] == 'pass'


def test_analytics(student_client, admin_client, exam):
    attempt_id = start_attempt(student_client, exam['id'])['attemptId']
    student_client.post('/api/exam-attempts/anti-cheat', json={
        'attemptId': attempt_id, 'eventType': 'tab_hidden', 'severity': 'critical',
    })
    student_client.post('/api/exam-attempts/submit', json={'attemptId': attempt_id, 'answers': {}})

    body = admin_client.get('/api/admin/analytics', query_string={'days': 7}).get_json()
    assert body['days'] == 7
    performance = body['examPerformance'][0]
    assert performance['title'] == 'General Knowledge'
    assert performance['attempts'] == 1
    assert performance['pass_rate'] == 0
    assert sum(day['submissions'] for day in body['dailySubmissions']) == 1
    assert body['antiCheatEvents'] == {'tab_hidden': 1}

    assert admin_client.get('/api/admin/analytics', query_string={'days': 9999}).get_json()['days'] == 365
    assert admin_client.get('/api/admin/analytics', query_string={'days': 'soon'}).status_code == 400


def test_dashboard_requires_admin(proctor_client):
    assert proctor_client.get('/api/admin/dashboard').status_code == 403


def test_revenue_counts_only_approved_payments(student_client, admin_client):
    program_id = admin_client.post('/api/admin/programs', json={'title': 'Track', 'enrollment_fee': 40}).get_json()['programId']
    transaction_id = student_client.post('/api/payments/manual', json={
        'programId': program_id, 'paymentMethod': 'cash', 'reference': 'R-1',
    }).get_json()['transactionId']

    stats = admin_client.get('/api/admin/dashboard').get_json()['stats']
    assert stats['pendingPayments'] == 1
    assert stats['totalRevenue'] == 0

    admin_client.post('/api/payments/approve', json={'transactionId': transaction_id, 'action': 'reject'})
    stats = admin_client.get('/api/admin/dashboard').get_json()['stats']
    assert stats['pendingPayments'] == 0
    assert stats['totalRevenue'] == 0

    transaction_id = student_client.post('/api/payments/manual', json={
        'programId': program_id, 'paymentMethod': 'cash', 'reference': 'R-2',
    }).get_json()['transactionId']
    admin_client.post('/api/payments/approve', json={'transactionId': transaction_id, 'action': 'approve'})
    assert admin_client.get('/api/admin/dashboard').get_json()['stats']['totalRevenue'] == 40


def test_bad_analytics_window_is_logged(admin_client, caplog):
    with caplog.at_level('WARNING', logger='examcenter.dashboard'):
        assert admin_client.get('/api/admin/analytics', query_string={'days': 'soon'}).status_code == 400
    assert 'bad days' in caplog.text
